import logging
import sys
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from labstrap.build import BuildResult
from labstrap.config import BootstrapConfig
from labstrap.errors import LabstrapError, StepFailed
from labstrap.executor import Executor
from labstrap.gpu import GpuInfo

logger = logging.getLogger(__name__)

OK = "ok"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class Context:
    """Everything steps share while a recipe runs"""
    config: BootstrapConfig
    executor: Executor
    recipe: str = ""
    gpu: Optional[GpuInfo] = None
    build: Optional[BuildResult] = None
    model_path: Optional[str] = None
    services: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    interactive: Optional[bool] = None

    def is_interactive(self) -> bool:
        if self.interactive is not None:
            return self.interactive
        return sys.stdin is not None and sys.stdin.isatty()


@dataclass
class Step:
    title: str
    action: Callable[[Context], None]
    optional: bool = False


def pause(ctx: Context) -> None:
    if ctx.config.auto or ctx.config.dry_run or not ctx.is_interactive():
        return
    input("Press ENTER to continue (or set AUTO=1 to skip)...")


@dataclass
class Plan:
    name: str
    description: str
    steps: List[Step] = field(default_factory=list)

    def add(self, title: str, optional: bool = False):
        """Decorator registering a function as the next step"""
        def register(fn: Callable[[Context], None]):
            self.steps.append(Step(title, fn, optional))
            return fn
        return register

    def run(self, ctx: Context) -> List[Tuple[str, str]]:
        """Run every step in order; an optional step's failure is logged and skipped"""
        ctx.recipe = self.name
        statuses: List[Tuple[str, str]] = []
        total = len(self.steps)
        logger.info("=" * 62)
        logger.info(f" {self.name}: {self.description}")
        logger.info("=" * 62)
        for i, step in enumerate(self.steps, start=1):
            logger.info(f"[{i}/{total}] {step.title}")
            try:
                step.action(ctx)
            except LabstrapError as e:
                if not step.optional:
                    statuses.append((step.title, FAILED))
                    logger.error(f"[{i}/{total}] {step.title} failed: {e}")
                    raise StepFailed(step.title, e) from e
                logger.warning(f"[{i}/{total}] {step.title} failed, continuing: {e}")
                statuses.append((step.title, SKIPPED))
            else:
                statuses.append((step.title, OK))
            if i < total:
                pause(ctx)
        self._summary(ctx, statuses)
        return statuses

    def _summary(self, ctx: Context, statuses: List[Tuple[str, str]]) -> None:
        logger.info("=" * 62)
        logger.info(f" {self.name} complete")
        skipped = [title for title, status in statuses if status == SKIPPED]
        if skipped:
            logger.warning(f" Steps that failed and were skipped: {', '.join(skipped)}")
        for note in ctx.notes:
            logger.info(f" {note}")
        logger.info("=" * 62)
