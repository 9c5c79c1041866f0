"""Provision WSL2 Ubuntu with llama.cpp, Ollama and OpenWebUI."""

__version__ = "0.5.0"
