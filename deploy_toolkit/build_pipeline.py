"""
build_pipeline.py - Dependency-ordered, cached execution of build tasks.

Tasks form a DAG through their files: task B depends on task A when one of
B's inputs is one of A's outputs. Independent tasks run concurrently on a
bounded thread pool; a task is skipped when its outputs are all strictly
newer than its inputs (nanosecond mtimes, plus the prerequisites listed in
its depfile, if it writes one).

The first failing command aborts the whole run: running siblings are killed
and nothing further is scheduled.
"""

import logging
import os
import re
import subprocess
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .build_profile import BuildProfile
from .errors import (
    BuildError,
    BuildTaskFailed,
    DependencyCycle,
    MissingTaskInput,
    MissingTaskOutput,
)
from .utils import cpu_count, format_duration, kill_process_tree

log = logging.getLogger("deploy_toolkit.pipeline")


def _key(path: Path) -> str:
    return os.path.normcase(os.path.normpath(os.path.abspath(path)))


def parse_depfile(path: Path) -> List[Path]:
    """Prerequisites from a Makefile-style ``target: dep dep ...`` file."""
    text = Path(path).read_text(encoding="utf-8", errors="replace")
    text = text.replace("\\\r\n", " ").replace("\\\n", " ")
    deps: List[Path] = []
    for line in text.splitlines():
        # ": " rather than ":" so Windows drive letters survive
        _, sep, rest = line.partition(": ")
        if not sep:
            continue
        for token in re.split(r"(?<!\\)\s+", rest.strip()):
            if token:
                deps.append(Path(token.replace("\\ ", " ")))
    return deps


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class BuildTask:
    """One external command with declared file inputs and outputs."""
    name: str
    inputs: Tuple[Path, ...] = ()
    outputs: Tuple[Path, ...] = ()
    command: Tuple[str, ...] = ()
    cwd: Optional[Path] = None
    env: Optional[Mapping[str, str]] = field(default=None, compare=False, hash=False)
    depfile: Optional[Path] = None

    def __post_init__(self):
        object.__setattr__(self, "inputs", tuple(Path(p) for p in self.inputs))
        object.__setattr__(self, "outputs", tuple(Path(p) for p in self.outputs))
        object.__setattr__(self, "command", tuple(str(c) for c in self.command))
        if not self.command:
            raise BuildError(f"task {self.name!r} has no command")


@dataclass
class Artifact:
    path: Path
    task: str


class TaskStatus(Enum):
    RAN = "ran"
    SKIPPED = "skipped"


@dataclass
class TaskResult:
    name: str
    status: TaskStatus
    duration: float = 0.0
    stdout: str = ""
    stderr: str = ""


@dataclass
class BuildProgress:
    """Progress update emitted as each task starts or finishes."""
    task: str = ""
    index: int = 0
    total: int = 0
    status: str = ""        # "running", "ran", "skipped"
    duration: float = 0.0


@dataclass
class BuildReport:
    profile: BuildProfile
    results: List[TaskResult] = field(default_factory=list)
    artifacts: List[Artifact] = field(default_factory=list)

    @property
    def executed(self) -> List[str]:
        return [r.name for r in self.results if r.status == TaskStatus.RAN]

    @property
    def skipped(self) -> List[str]:
        return [r.name for r in self.results if r.status == TaskStatus.SKIPPED]

    def artifact(self, suffix: str = "") -> Optional[Artifact]:
        for a in self.artifacts:
            if a.path.name.endswith(suffix):
                return a
        return None


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
class BuildPipeline:
    def __init__(
        self,
        profile: BuildProfile,
        tasks: Sequence[BuildTask],
        parallelism: Optional[int] = None,
    ):
        self.profile = profile
        self.tasks: List[BuildTask] = list(tasks)
        self.parallelism = max(1, parallelism or cpu_count())
        self._index = {t.name: i for i, t in enumerate(self.tasks)}
        self._by_name = {t.name: t for t in self.tasks}
        if len(self._by_name) != len(self.tasks):
            dupes = sorted({t.name for t in self.tasks if sum(u.name == t.name for u in self.tasks) > 1})
            raise BuildError(f"duplicate task names: {', '.join(dupes)}")

        self._producers: Dict[str, str] = {}
        for task in self.tasks:
            for out in task.outputs:
                k = _key(out)
                if k in self._producers:
                    raise BuildError(
                        f"{out} is produced by both {self._producers[k]!r} and {task.name!r}"
                    )
                self._producers[k] = task.name

        self._deps: Dict[str, List[str]] = {}
        for task in self.tasks:
            deps: List[str] = []
            for inp in task.inputs:
                producer = self._producers.get(_key(inp))
                if producer and producer not in deps:
                    deps.append(producer)
            self._deps[task.name] = deps

        self._progress_cb: Optional[Callable[[BuildProgress], None]] = None
        self._abort = threading.Event()
        self._cancelled = False
        self._procs: Set[subprocess.Popen] = set()
        self._lock = threading.Lock()
        self._started = 0

    # -- progress / cancel API ------------------------------------------------
    def set_progress_callback(self, cb: Callable[[BuildProgress], None]):
        self._progress_cb = cb

    def _emit(self, progress: BuildProgress):
        if self._progress_cb:
            self._progress_cb(progress)

    def cancel(self):
        """Abort a running build from another thread."""
        self._cancelled = True
        self._abort.set()
        self._kill_running()

    def _kill_running(self):
        with self._lock:
            procs = list(self._procs)
        for proc in procs:
            if proc.poll() is None:
                log.debug("Killing %s (pid %d)", proc.args[0], proc.pid)
                kill_process_tree(proc.pid, timeout=2.0)

    # -- graph ----------------------------------------------------------------
    def dependencies(self, name: str) -> List[str]:
        return list(self._deps[name])

    def order(self) -> List[BuildTask]:
        """Topological order; ties keep declaration order."""
        pending = {name: set(deps) for name, deps in self._deps.items()}
        ordered: List[BuildTask] = []
        while pending:
            ready = sorted((n for n, deps in pending.items() if not deps), key=self._index.get)
            if not ready:
                raise DependencyCycle(self._find_cycle(set(pending)))
            for name in ready:
                ordered.append(self._by_name[name])
                del pending[name]
            for deps in pending.values():
                deps.difference_update(ready)
        return ordered

    def _find_cycle(self, remaining: Set[str]) -> List[str]:
        """Members of one cycle among the unorderable tasks."""
        start = min(remaining, key=self._index.get)
        path: List[str] = []
        seen: Dict[str, int] = {}
        node = start
        while node not in seen:
            seen[node] = len(path)
            path.append(node)
            node = next(d for d in self._deps[node] if d in remaining)
        return path[seen[node]:]

    # -- cache ----------------------------------------------------------------
    def is_stale(self, task: BuildTask) -> bool:
        if not task.outputs:
            return True
        out_mtimes = []
        for out in task.outputs:
            try:
                out_mtimes.append(out.stat().st_mtime_ns)
            except FileNotFoundError:
                return True

        inputs = list(task.inputs)
        if task.depfile is not None:
            if not task.depfile.exists():
                return True
            inputs.extend(parse_depfile(task.depfile))
        newest_input = 0
        for inp in inputs:
            try:
                newest_input = max(newest_input, inp.stat().st_mtime_ns)
            except FileNotFoundError:
                return True
        return min(out_mtimes) <= newest_input

    def _check_inputs(self, ordered: Sequence[BuildTask]):
        for task in ordered:
            for inp in task.inputs:
                if _key(inp) not in self._producers and not inp.exists():
                    raise MissingTaskInput(task.name, inp)

    # -- execution ------------------------------------------------------------
    def run(self) -> BuildReport:
        ordered = self.order()
        self._check_inputs(ordered)
        self._abort.clear()
        self._cancelled = False
        self._started = 0
        total = len(ordered)
        log.info("Building %s: %d task(s), up to %d in parallel", self.profile, total, self.parallelism)

        waiting = {t.name: set(self._deps[t.name]) for t in ordered}
        dependents: Dict[str, List[str]] = {t.name: [] for t in ordered}
        for name, deps in self._deps.items():
            for dep in deps:
                dependents[dep].append(name)

        results: Dict[str, TaskResult] = {}
        failure: Optional[BuildError] = None
        ready = [t.name for t in ordered if not waiting[t.name]]

        with ThreadPoolExecutor(max_workers=self.parallelism) as pool:
            running: Dict[Future, str] = {}
            while running or (ready and failure is None and not self._abort.is_set()):
                while ready and failure is None and not self._abort.is_set():
                    name = ready.pop(0)
                    running[pool.submit(self._execute, self._by_name[name], total)] = name
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: self._index[running[f]]):
                    name = running.pop(fut)
                    try:
                        results[name] = fut.result()
                    except BuildError as exc:
                        if failure is None:
                            failure = exc
                            self._abort.set()
                            self._kill_running()
                        continue
                    for dependent in dependents[name]:
                        waiting[dependent].discard(name)
                        if not waiting[dependent]:
                            ready.append(dependent)
                ready.sort(key=self._index.get)

        if self._cancelled:
            # killed tasks fail too; report the cancel, not their exit codes
            raise BuildError("build cancelled")
        if failure is not None:
            log.error("Build failed: %s", failure)
            raise failure

        report = BuildReport(profile=self.profile)
        for task in ordered:
            report.results.append(results[task.name])
            report.artifacts.extend(Artifact(out, task.name) for out in task.outputs)
        log.info("Build finished: %d ran, %d skipped", len(report.executed), len(report.skipped))
        return report

    def _next_index(self) -> int:
        with self._lock:
            self._started += 1
            return self._started

    def _execute(self, task: BuildTask, total: int) -> TaskResult:
        if self._abort.is_set():
            raise BuildError(f"task {task.name!r} not started: build aborted")
        index = self._next_index()

        if not self.is_stale(task):
            log.info("[%d/%d] %s [SKIPPED]", index, total, task.name)
            self._emit(BuildProgress(task.name, index, total, "skipped"))
            return TaskResult(task.name, TaskStatus.SKIPPED)

        self._emit(BuildProgress(task.name, index, total, "running"))
        log.debug("%s: %s", task.name, " ".join(task.command))
        for out in task.outputs:
            out.parent.mkdir(parents=True, exist_ok=True)
        env = None
        if task.env:
            env = dict(os.environ)
            env.update(task.env)

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                list(task.command),
                cwd=task.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            raise BuildTaskFailed(task.name, 127, str(exc)) from exc

        with self._lock:
            self._procs.add(proc)
        if self._abort.is_set():
            kill_process_tree(proc.pid, timeout=2.0)
        try:
            stdout, stderr = proc.communicate()
        finally:
            with self._lock:
                self._procs.discard(proc)
        duration = time.monotonic() - start

        if proc.returncode != 0:
            raise BuildTaskFailed(task.name, proc.returncode, stderr)
        for out in task.outputs:
            if not out.exists():
                raise MissingTaskOutput(task.name, out)

        log.info("[%d/%d] %s [%s]", index, total, task.name, format_duration(duration))
        self._emit(BuildProgress(task.name, index, total, "ran", duration))
        return TaskResult(task.name, TaskStatus.RAN, duration, stdout, stderr)
