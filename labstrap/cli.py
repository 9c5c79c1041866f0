#!/usr/bin/env python3
"""
labstrap: provision a WSL2 / Ubuntu box with llama.cpp, Ollama and OpenWebUI.

Usage:
    labstrap list
    labstrap detect-gpu
    sudo labstrap run llama-openwebui --auto

    # See what a recipe would do, without running anything
    labstrap run wsl-gpu --dry-run

    # Provision another machine over SSH
    labstrap run ollama-openwebui --host 192.168.1.20 --user ubuntu --key ~/.ssh/id_ed25519

Environment variables:
    AUTO=1                           skip the pauses between steps
    HF_TOKEN / HUGGINGFACE_HUB_TOKEN token for gated Hugging Face models
    GPU_TYPE=nvidia|intel|amd|cpu    skip GPU detection
    CUDA_AVAILABLE=1                 with GPU_TYPE=nvidia, build with CUDA
    VERBOSE=2                        echo command output to the console
"""

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

from labstrap.build import BuildResult
from labstrap.config import BootstrapConfig, load_config, verbose
from labstrap.errors import CommandError, LabstrapError
from labstrap.executor import DryRunExecutor, Executor, LocalExecutor
from labstrap.gpu import detect_gpu
from labstrap.log import setup_logging
from labstrap.plan import Context
from labstrap.recipes import RECIPES, get_plan
from labstrap.systemd import llama_server_unit, openwebui_unit

logger = logging.getLogger("labstrap.cli")


def make_executor(args, config: BootstrapConfig) -> Executor:
    if config.dry_run:
        return DryRunExecutor()
    if not getattr(args, "host", None):
        return LocalExecutor()

    from labstrap.remote import RemoteExecutor, SSHConfig, ssh_ok

    ssh_config = SSHConfig.from_key_file(
        args.host,
        args.user or os.getenv("USER", "root"),
        key_path=Path(args.key).expanduser(),
        port=args.ssh_port,
        private_key_passphrase=os.getenv("PASSPHRASE"),
    )
    if args.wait_ssh and not asyncio.run(ssh_ok(ssh_config, max_wait=args.wait_ssh)):
        raise LabstrapError(f"{args.host} did not become reachable over SSH")
    return RemoteExecutor(ssh_config)


def cmd_list(args, config: BootstrapConfig) -> int:
    width = max(len(name) for name in RECIPES)
    for name, (description, _) in RECIPES.items():
        print(f"  {name:<{width}}  {description}")
    return 0


def cmd_detect_gpu(args, config: BootstrapConfig) -> int:
    with make_executor(args, config) as executor:
        info = detect_gpu(executor, config.gpu_type, config.cuda_available)
    for line in info.summary():
        print(line)
    return 0


def cmd_unit(args, config: BootstrapConfig) -> int:
    if args.service == "llama":
        build = BuildResult("cuda" if args.cuda else "cpu", os.path.join(config.paths.llama_dir, "build", "bin"))
        unit = llama_server_unit(config, config.model_path(), build)
    else:
        unit = openwebui_unit(config, backend=args.backend)
    sys.stdout.write(unit.render())
    return 0


def cmd_run(args, config: BootstrapConfig) -> int:
    plan = get_plan(args.recipe)
    log_file = args.log_file or os.path.join(config.paths.log_dir, f"{args.recipe}.log")
    if not config.dry_run:
        setup_logging(log_file, level=_console_level(args))
    logger.debug(f"Configuration: {config.to_json()}")
    with make_executor(args, config) as executor:
        ctx = Context(config=config, executor=executor)
        plan.run(ctx)
        if isinstance(executor, DryRunExecutor):
            print()
            for command in executor.commands:
                print(command)
    return 0


def _console_level(args) -> int:
    return logging.DEBUG if getattr(args, "verbose", False) or verbose(2) else logging.INFO


def _common_options(parser: argparse.ArgumentParser, suppress: bool = False) -> None:
    """--config/--verbose, accepted before or after the subcommand"""
    extra = {"default": argparse.SUPPRESS} if suppress else {}
    parser.add_argument("--config", "-c", type=Path, help="JSON file overriding the default configuration", **extra)
    parser.add_argument("--verbose", "-v", action="store_true", help="Echo command output to the console", **extra)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="labstrap",
        description="Provision WSL2 Ubuntu with llama.cpp, Ollama and OpenWebUI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List the recipes
  labstrap list

  # llama.cpp (CUDA if possible) + model + OpenWebUI as systemd services
  sudo AUTO=1 labstrap run llama-openwebui

  # Print a unit file without installing anything
  labstrap unit llama --cuda
        """
    )
    _common_options(parser)

    # subcommand copies must not overwrite a value given before the subcommand
    common = argparse.ArgumentParser(add_help=False)
    _common_options(common, suppress=True)

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List the available recipes", parents=[common])

    detect = sub.add_parser("detect-gpu", help="Detect NVIDIA/Intel/AMD GPUs and CUDA", parents=[common])
    _add_remote_args(detect)

    run = sub.add_parser("run", help="Run a recipe", parents=[common])
    run.add_argument("recipe", choices=sorted(RECIPES), help="Recipe to run")
    run.add_argument("--auto", action="store_true", help="Do not pause between steps (same as AUTO=1)")
    run.add_argument("--dry-run", "-n", action="store_true", help="Print the commands instead of running them")
    run.add_argument("--log-file", type=Path, help="Log file (default: <log_dir>/<recipe>.log)")
    _add_remote_args(run)

    unit = sub.add_parser("unit", help="Print a generated systemd unit", parents=[common])
    unit.add_argument("service", choices=["llama", "openwebui"])
    unit.add_argument("--cuda", action="store_true", help="llama: offload layers to the GPU")
    unit.add_argument("--backend", choices=["llamacpp", "ollama"], default="llamacpp",
                      help="openwebui: which API to connect to (default: llamacpp)")
    return parser


def _add_remote_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--host", type=str, help="Provision this host over SSH instead of the local machine")
    parser.add_argument("--user", type=str, help="SSH user (default: $USER)")
    parser.add_argument("--key", type=str, default="~/.ssh/id_ed25519", help="SSH private key file")
    parser.add_argument("--ssh-port", type=int, default=22, help="SSH port (default: 22)")
    parser.add_argument("--wait-ssh", type=int, default=0, metavar="SECONDS",
                        help="Wait up to SECONDS for the host to accept SSH")


COMMANDS = {
    "list": cmd_list,
    "detect-gpu": cmd_detect_gpu,
    "run": cmd_run,
    "unit": cmd_unit,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(level=_console_level(args))

    try:
        config = load_config(args.config)
        if getattr(args, "auto", False):
            config = replace(config, auto=True)
        if getattr(args, "dry_run", False):
            config = replace(config, dry_run=True, auto=True)
        return COMMANDS[args.command](args, config)
    except LabstrapError as e:
        logger.error(str(e))
        cause = getattr(e, "cause", None)
        if isinstance(cause, CommandError) and cause.output:
            logger.error(f"last output of {cause.cmd}:\n{cause.tail()}")
        return 1
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
