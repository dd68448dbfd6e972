#!/usr/bin/env python3
"""
foreman.py

Directory-driven scheduler for multi-stage script pipelines.

Every sub-directory of the pipelines root holds a ``pipeline.json`` naming a
cron expression, an ordered list of stages and the jobs that belong to each
stage. On every refresh the scheduler reloads the definitions, works out which
pipelines are due, and runs them stage by stage with the jobs of a stage in
parallel.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import shlex
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from queue import Queue
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set, Tuple

import yaml
from croniter import CroniterBadDateError, croniter


DEFAULT_CONFIG = "foreman.yaml"
DEFAULT_LOG_FILE = "foreman.log"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_REFRESH_SECONDS = 10
DEFAULT_STATE_DIR = ".foreman/state"
DEFAULT_PREVIEW_COUNT = 5
DEFINITION_FILE = "pipeline.json"
OUTPUT_PREVIEW_CHARS = 1000

CRON_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("weekday", 1, 7),
)
CRON_PART_RE = re.compile(r"^(\d+)(?:-(\d+))?$")
PIPELINE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
EVENT_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

LAUNCH_ERROR = "launch_error"
EXIT_ERROR = "exit_error"
TIMEOUT_ERROR = "timeout"

UTC = timezone.utc
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class ForemanError(Exception):
    """Base error for foreman."""


class ConfigError(ForemanError):
    """Settings file or command-line validation error."""


class DefinitionError(ForemanError):
    """A pipeline definition that cannot be scheduled."""

    def __init__(self, message: str, reason: str = "schema", path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.path = path


class ExpressionError(DefinitionError):
    """Malformed cron expression."""

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message, reason="expression", path=path)


class StateIOError(ForemanError):
    """Run state file could not be read or written."""


class CatalogError(ForemanError):
    """The pipelines root itself cannot be read."""


logger = logging.getLogger("foreman")


def setup_logging(level: str = DEFAULT_LOG_LEVEL, log_file: Optional[Path] = None) -> logging.Logger:
    logger.setLevel(level)
    if logger.handlers:
        return logger
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _minute_of(value: datetime) -> datetime:
    return _ensure_aware_utc(value).replace(second=0, microsecond=0)


def same_minute(left: datetime, right: datetime) -> bool:
    return _minute_of(left) == _minute_of(right)


def new_run_id(pipeline_id: str, started: datetime) -> str:
    return f"{pipeline_id}:{started.strftime('%Y%m%d%H%M%S')}-{started.microsecond:06d}-{os.getpid()}"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SchedulerEvent:
    event_type: str
    level: str
    message: str
    event_at: datetime
    pipeline_id: Optional[str] = None
    run_id: Optional[str] = None
    stage: Optional[str] = None
    job_id: Optional[str] = None
    success: Optional[bool] = None
    return_code: Optional[int] = None
    duration_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "eventType": self.event_type,
            "level": self.level,
            "message": self.message,
            "eventAt": self.event_at.astimezone(UTC).isoformat(),
            "metadata": self.metadata,
        }
        if self.pipeline_id:
            payload["pipelineId"] = self.pipeline_id
        if self.run_id:
            payload["runId"] = self.run_id
        if self.stage:
            payload["stage"] = self.stage
        if self.job_id:
            payload["jobId"] = self.job_id
        if self.success is not None:
            payload["success"] = self.success
        if self.return_code is not None:
            payload["returnCode"] = self.return_code
        if self.duration_ms is not None:
            payload["durationMs"] = self.duration_ms
        return payload


class EventSink:
    """Logs scheduler events and optionally appends them to a JSONL file."""

    def __init__(self, events_file: Optional[Path] = None) -> None:
        self.events_file = events_file
        self._lock = threading.Lock()

    def emit(self, event: SchedulerEvent) -> None:
        prefix = f"[{event.run_id}] " if event.run_id else ""
        logger.log(EVENT_LEVELS.get(event.level, logging.INFO), "%s%s", prefix, event.message)
        if self.events_file is None:
            return
        line = json.dumps(event.to_payload(), separators=(",", ":"), default=str)
        with self._lock:
            self.events_file.parent.mkdir(parents=True, exist_ok=True)
            with self.events_file.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")


def emit_event(
    sink: Optional[EventSink],
    event_type: str,
    level: str,
    message: str,
    **fields: Any,
) -> None:
    if sink is None:
        return
    event = SchedulerEvent(
        event_type=event_type,
        level=level,
        message=message,
        event_at=utc_now(),
        **fields,
    )
    try:
        sink.emit(event)
    except OSError as exc:
        logger.warning("Event sink failed to record %s: %s", event_type, str(exc))


# ---------------------------------------------------------------------------
# Cron matching
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CronExpression:
    """A parsed five-field schedule: minute, hour, day, month, ISO weekday."""

    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]

    def fields(self) -> Tuple[FrozenSet[int], ...]:
        return (self.minutes, self.hours, self.days, self.months, self.weekdays)

    def matches(self, instant: datetime) -> bool:
        moment = _ensure_aware_utc(instant)
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.day in self.days
            and moment.month in self.months
            and moment.isoweekday() in self.weekdays
        )

    def croniter_expression(self) -> str:
        tokens: List[str] = []
        for values, (name, minimum, maximum) in zip(self.fields(), CRON_FIELDS):
            if len(values) == maximum - minimum + 1:
                tokens.append("*")
                continue
            if name == "weekday":
                # croniter numbers Sunday as 0
                values = frozenset(0 if value == 7 else value for value in values)
            tokens.append(",".join(str(value) for value in sorted(values)))
        return " ".join(tokens)


def parse_expression(expression: Any, field_path: str = "expression") -> CronExpression:
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError(f"Error: {field_path} must be a non-empty cron string.")
    parts = expression.split()
    if len(parts) != len(CRON_FIELDS):
        raise ExpressionError(
            f'Error: {field_path} must have {len(CRON_FIELDS)} fields, got {len(parts)} in "{expression}".'
        )
    values = [
        _parse_cron_field(part, f"{field_path}.{name}", minimum, maximum)
        for part, (name, minimum, maximum) in zip(parts, CRON_FIELDS)
    ]
    return CronExpression(" ".join(parts), *values)


def _parse_cron_field(token: str, field_path: str, minimum: int, maximum: int) -> FrozenSet[int]:
    if token == "*":
        return frozenset(range(minimum, maximum + 1))
    accepted: Set[int] = set()
    for part in token.split(","):
        match = CRON_PART_RE.match(part)
        if not match:
            raise ExpressionError(f'Error: Invalid cron token "{token}" at {field_path}.')
        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) is not None else start
        if start > end:
            raise ExpressionError(f'Error: Invalid range "{part}" at {field_path}.')
        if start < minimum or end > maximum:
            raise ExpressionError(
                f'Error: "{part}" out of bounds {minimum}-{maximum} at {field_path}.'
            )
        accepted.update(range(start, end + 1))
    return frozenset(accepted)


def matches(expression: Any, instant: datetime) -> bool:
    """Return True when ``instant`` (to the minute, in UTC) satisfies ``expression``."""
    cron = expression if isinstance(expression, CronExpression) else parse_expression(expression)
    return cron.matches(instant)


def next_run_after(cron: CronExpression, after_utc: datetime) -> Optional[datetime]:
    after_utc = _ensure_aware_utc(after_utc)
    iterator = croniter(cron.croniter_expression(), after_utc, day_or=False)
    try:
        nxt = iterator.get_next(datetime)
    except CroniterBadDateError:
        return None
    return _ensure_aware_utc(nxt)


def next_run_times(cron: CronExpression, count: int, now_utc: Optional[datetime] = None) -> List[datetime]:
    cursor = _ensure_aware_utc(now_utc or utc_now())
    runs: List[datetime] = []
    while len(runs) < count:
        nxt = next_run_after(cron, cursor)
        if nxt is None:
            break
        runs.append(nxt)
        cursor = nxt + timedelta(seconds=1)
    return runs


# ---------------------------------------------------------------------------
# Pipeline definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Job:
    id: str
    stage: str
    script: str
    path: Path
    breadcrumb: str
    args: Tuple[str, ...] = ()
    timeout: Optional[int] = None


@dataclass(frozen=True)
class Pipeline:
    id: str
    expression: str
    schedule: CronExpression
    stages: Tuple[str, ...]
    jobs: Tuple[Job, ...]
    directory: Path
    definition: str = field(default="", repr=False, compare=False)

    def jobs_for_stage(self, stage: str) -> List[Job]:
        return [job for job in self.jobs if job.stage == stage]


def ensure_str(value: Any, field_path: str, error_cls: type = ConfigError) -> str:
    if not isinstance(value, str) or not value.strip():
        raise error_cls(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_int(value: Any, field_path: str, default: Optional[int], minimum: int = 1, error_cls: type = ConfigError) -> Optional[int]:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise error_cls(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise error_cls(f"Error: {field_path} must be >= {minimum}.")
    return value


def read_definition(directory: Path) -> str:
    definition_path = directory / DEFINITION_FILE
    try:
        if not definition_path.is_file():
            raise DefinitionError(
                f"Error: No {DEFINITION_FILE} found in {directory}.",
                reason="missing",
                path=definition_path,
            )
        return definition_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise DefinitionError(
            f"Error: Failed to read {definition_path}: {exc}",
            reason="malformed",
            path=definition_path,
        ) from exc


def load_pipeline(directory: Path) -> Pipeline:
    directory = directory.resolve()
    return parse_pipeline(read_definition(directory), directory)


def parse_pipeline(text: str, directory: Path) -> Pipeline:
    definition_path = directory / DEFINITION_FILE
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DefinitionError(
            f"Error: Failed to parse JSON in {definition_path}: {exc}",
            reason="malformed",
            path=definition_path,
        ) from exc
    if not isinstance(payload, dict):
        raise DefinitionError(
            f"Error: Top-level value of {definition_path} must be an object.",
            path=definition_path,
        )

    try:
        unknown = set(payload.keys()) - {"id", "expression", "stages", "jobs"}
        if unknown:
            raise DefinitionError(f"Error: Unknown top-level keys: {sorted(unknown)}.")
        pipeline_id = ensure_str(payload.get("id"), "id", DefinitionError)
        if not PIPELINE_ID_RE.match(pipeline_id):
            raise DefinitionError(
                f'Error: id "{pipeline_id}" may only contain letters, digits, ".", "_" and "-".'
            )
        schedule = parse_expression(payload.get("expression"))
        stages = parse_stages(payload.get("stages"))
        jobs = parse_jobs(payload.get("jobs"), pipeline_id, stages, directory)
    except DefinitionError as exc:
        exc.path = definition_path
        raise

    return Pipeline(
        id=pipeline_id,
        expression=schedule.expression,
        schedule=schedule,
        stages=stages,
        jobs=jobs,
        directory=directory,
        definition=text,
    )


def parse_stages(raw: Any, field_path: str = "stages") -> Tuple[str, ...]:
    if not isinstance(raw, list) or not raw:
        raise DefinitionError(f"Error: {field_path} must be a non-empty list of stage names.")
    stages: List[str] = []
    for idx, value in enumerate(raw):
        stage = ensure_str(value, f"{field_path}[{idx}]", DefinitionError)
        if stage in stages:
            raise DefinitionError(f'Error: Duplicate stage "{stage}" at {field_path}[{idx}].', reason="duplicate_stage")
        stages.append(stage)
    return tuple(stages)


def parse_jobs(
    raw: Any,
    pipeline_id: str,
    stages: Tuple[str, ...],
    directory: Path,
    field_path: str = "jobs",
) -> Tuple[Job, ...]:
    if not isinstance(raw, list):
        raise DefinitionError(f"Error: {field_path} must be a list of jobs.")
    seen_ids: Set[str] = set()
    jobs: List[Job] = []
    for idx, job_raw in enumerate(raw):
        item_path = f"{field_path}[{idx}]"
        if not isinstance(job_raw, dict):
            raise DefinitionError(f"Error: {item_path} must be an object.")
        unknown = set(job_raw.keys()) - {"id", "stage", "script", "args", "timeout"}
        if unknown:
            raise DefinitionError(f"Error: Unknown keys in {item_path}: {sorted(unknown)}.")

        job_id = ensure_str(job_raw.get("id"), f"{item_path}.id", DefinitionError)
        if job_id in seen_ids:
            raise DefinitionError(f'Error: Duplicate job id "{job_id}" at {item_path}.', reason="duplicate_job")
        seen_ids.add(job_id)

        stage = ensure_str(job_raw.get("stage"), f"{item_path}.stage", DefinitionError)
        if stage not in stages:
            raise DefinitionError(
                f'Error: {item_path}.stage "{stage}" is not declared in stages {list(stages)}.',
                reason="unknown_stage",
            )

        script = ensure_str(job_raw.get("script"), f"{item_path}.script", DefinitionError)
        raw_path = Path(script)
        resolved = raw_path if raw_path.is_absolute() else directory / raw_path
        jobs.append(
            Job(
                id=job_id,
                stage=stage,
                script=script,
                path=resolved.resolve(),
                breadcrumb=f"{pipeline_id}/{stage}/{job_id}",
                args=parse_args_field(job_raw.get("args"), f"{item_path}.args"),
                timeout=ensure_int(job_raw.get("timeout"), f"{item_path}.timeout", None, 1, DefinitionError),
            )
        )
    return tuple(jobs)


def parse_args_field(raw: Any, field_path: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return tuple(shlex.split(raw))
    if not isinstance(raw, list):
        raise DefinitionError(f"Error: {field_path} must be a list or shell-style string.")
    args: List[str] = []
    for arg_idx, arg in enumerate(raw):
        if not isinstance(arg, (str, int, float, bool)):
            raise DefinitionError(
                f"Error: {field_path}[{arg_idx}] must be scalar value convertible to string."
            )
        args.append(str(arg))
    return tuple(args)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@dataclass
class CatalogChanges:
    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    conflicts: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed)


class PipelineCatalog:
    """In-memory view of the pipelines root, reloaded by ``refresh``.

    Definitions are compared by content: an unchanged file is neither
    re-parsed nor, when invalid, re-reported. The pipeline map is swapped as a
    whole, so readers always see complete models.
    """

    def __init__(self, root: Path, events: Optional[EventSink] = None) -> None:
        self.root = root
        self.events = events or EventSink()
        self._pipelines: Dict[str, Pipeline] = {}
        self._parsed: Dict[Path, Pipeline] = {}
        self._failures: Dict[Path, Tuple[Optional[str], str]] = {}
        self._conflicts: Set[Tuple[str, Path]] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._pipelines)

    def __contains__(self, pipeline_id: object) -> bool:
        return pipeline_id in self._pipelines

    def get(self, pipeline_id: str) -> Optional[Pipeline]:
        return self._pipelines.get(pipeline_id)

    def pipelines(self) -> List[Pipeline]:
        current = self._pipelines
        return [current[key] for key in sorted(current)]

    def _directories(self) -> List[Path]:
        if not self.root.is_dir():
            raise CatalogError(f"Error: Pipelines directory not found: {self.root}")
        try:
            entries = list(self.root.iterdir())
        except OSError as exc:
            raise CatalogError(f"Error: Cannot read pipelines directory {self.root}: {exc}") from exc
        return sorted(
            (entry.resolve() for entry in entries if entry.is_dir() and not entry.name.startswith(".")),
            key=lambda path: path.name,
        )

    def _load(self, directory: Path, changes: CatalogChanges) -> Optional[Pipeline]:
        try:
            text = read_definition(directory)
        except DefinitionError as exc:
            return self._record_failure(directory, None, exc, changes)
        cached = self._parsed.get(directory)
        if cached is not None and cached.definition == text:
            return cached
        failure = self._failures.get(directory)
        if failure is not None and failure[0] == text:
            return None
        try:
            pipeline = parse_pipeline(text, directory)
        except DefinitionError as exc:
            return self._record_failure(directory, text, exc, changes)
        self._failures.pop(directory, None)
        self._parsed[directory] = pipeline
        return pipeline

    def _record_failure(
        self,
        directory: Path,
        text: Optional[str],
        error: DefinitionError,
        changes: CatalogChanges,
    ) -> None:
        self._parsed.pop(directory, None)
        previous = self._failures.get(directory)
        self._failures[directory] = (text, str(error))
        if previous is not None and previous[0] == text:
            return None
        changes.failed[str(directory)] = str(error)
        emit_event(
            self.events,
            "pipeline.load_failed",
            "ERROR",
            f"Pipeline in {directory} could not be loaded: {error}",
            metadata={"directory": str(directory), "reason": error.reason},
        )
        return None

    def refresh(self) -> CatalogChanges:
        with self._lock:
            return self._refresh()

    def _refresh(self) -> CatalogChanges:
        changes = CatalogChanges()
        directories = self._directories()
        present = set(directories)
        for stale in [path for path in self._parsed if path not in present]:
            del self._parsed[stale]
        for stale in [path for path in self._failures if path not in present]:
            del self._failures[stale]

        candidates: Dict[str, List[Pipeline]] = {}
        for directory in directories:
            pipeline = self._load(directory, changes)
            if pipeline is not None:
                candidates.setdefault(pipeline.id, []).append(pipeline)

        previous = self._pipelines
        current: Dict[str, Pipeline] = {}
        conflicts: Set[Tuple[str, Path]] = set()
        for pipeline_id, group in candidates.items():
            owner = group[0]
            if pipeline_id in previous:
                owner = next(
                    (item for item in group if item.directory == previous[pipeline_id].directory),
                    owner,
                )
            current[pipeline_id] = owner
            rejected = [item for item in group if item is not owner]
            if not rejected:
                continue
            changes.conflicts[pipeline_id] = [str(item.directory) for item in rejected]
            for item in rejected:
                key = (pipeline_id, item.directory)
                conflicts.add(key)
                if key in self._conflicts:
                    continue
                emit_event(
                    self.events,
                    "pipeline.conflict",
                    "ERROR",
                    f'Duplicate pipeline id "{pipeline_id}" in {item.directory}; keeping {owner.directory}.',
                    pipeline_id=pipeline_id,
                    metadata={"kept": str(owner.directory), "rejected": str(item.directory)},
                )
        self._conflicts = conflicts

        for pipeline_id in sorted(current):
            pipeline = current[pipeline_id]
            old = previous.get(pipeline_id)
            if old is None:
                changes.added.append(pipeline_id)
                emit_event(
                    self.events,
                    "pipeline.loaded",
                    "INFO",
                    f"Pipeline loaded: {pipeline_id} ({pipeline.expression})",
                    pipeline_id=pipeline_id,
                    metadata={"directory": str(pipeline.directory), "stages": list(pipeline.stages)},
                )
            elif old.definition != pipeline.definition or old.directory != pipeline.directory:
                changes.updated.append(pipeline_id)
                emit_event(
                    self.events,
                    "pipeline.updated",
                    "INFO",
                    f"Pipeline reloaded: {pipeline_id} ({pipeline.expression})",
                    pipeline_id=pipeline_id,
                    metadata={"directory": str(pipeline.directory), "stages": list(pipeline.stages)},
                )
        for pipeline_id in sorted(set(previous) - set(current)):
            changes.removed.append(pipeline_id)
            emit_event(
                self.events,
                "pipeline.removed",
                "INFO",
                f"Pipeline removed: {pipeline_id}",
                pipeline_id=pipeline_id,
            )

        self._pipelines = current
        return changes


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


@dataclass
class RunState:
    id: str
    active: bool = False
    timestamp: datetime = EPOCH

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "active": self.active,
            "timestamp": self.timestamp.astimezone(UTC).isoformat(),
        }

    @staticmethod
    def from_payload(payload: Any, pipeline_id: str) -> "RunState":
        if not isinstance(payload, dict):
            raise StateIOError("Error: state must be a JSON object.")
        stored_id = payload.get("id", pipeline_id)
        if stored_id != pipeline_id:
            raise StateIOError(f'Error: state belongs to "{stored_id}", expected "{pipeline_id}".')
        active = payload.get("active", False)
        if not isinstance(active, bool):
            raise StateIOError("Error: state.active must be true or false.")
        raw_timestamp = payload.get("timestamp")
        if raw_timestamp is None:
            return RunState(id=pipeline_id, active=active)
        if not isinstance(raw_timestamp, str):
            raise StateIOError("Error: state.timestamp must be an ISO 8601 string.")
        if raw_timestamp.endswith("Z"):
            raw_timestamp = raw_timestamp[:-1] + "+00:00"
        try:
            timestamp = datetime.fromisoformat(raw_timestamp)
        except ValueError as exc:
            raise StateIOError(f'Error: state.timestamp is not ISO 8601: "{raw_timestamp}".') from exc
        return RunState(id=pipeline_id, active=active, timestamp=_ensure_aware_utc(timestamp))


class StateStore:
    """One JSON record per pipeline under ``state_dir``.

    All transitions happen under a single lock and every write replaces the
    file atomically, so readers only ever see a complete record.
    """

    def __init__(self, state_dir: Path, events: Optional[EventSink] = None) -> None:
        self.state_dir = state_dir
        self.events = events or EventSink()
        self._lock = threading.RLock()

    def path_for(self, pipeline_id: str) -> Path:
        return self.state_dir / f"{pipeline_id}.json"

    def read(self, pipeline_id: str) -> RunState:
        path = self.path_for(pipeline_id)
        try:
            if not path.exists():
                return RunState(id=pipeline_id)
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StateIOError(f"Error: Failed to read state file {path}: {exc}") from exc
        try:
            return RunState.from_payload(payload, pipeline_id)
        except StateIOError as exc:
            raise StateIOError(f"{exc} ({path})") from exc

    def load(self, pipeline_id: str) -> RunState:
        try:
            return self.read(pipeline_id)
        except StateIOError as exc:
            emit_event(
                self.events,
                "state.load_failed",
                "WARN",
                f"{exc}; treating {pipeline_id} as never run.",
                pipeline_id=pipeline_id,
            )
            return RunState(id=pipeline_id)

    def write(self, state: RunState) -> None:
        path = self.path_for(state.id)
        data = json.dumps(state.to_payload(), indent=2) + "\n"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{state.id}.", suffix=".tmp", dir=str(path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(data)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, path)
            finally:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
        except OSError as exc:
            raise StateIOError(f"Error: Failed to write state file {path}: {exc}") from exc

    def ensure(self, pipeline_id: str) -> None:
        """Create the default record for a pipeline seen for the first time."""
        path = self.path_for(pipeline_id)
        with self._lock:
            try:
                exists = path.exists()
            except OSError as exc:
                raise StateIOError(f"Error: Failed to check state file {path}: {exc}") from exc
            if not exists:
                self.write(RunState(id=pipeline_id))

    def mark_started(self, pipeline_id: str, now: datetime, same_minute_ok: bool = False) -> bool:
        """Claim a run for ``pipeline_id``.

        Returns False without writing when a run is already active, or when
        the last recorded run falls in the same minute as ``now`` and
        ``same_minute_ok`` is not set. Raises StateIOError if the claim cannot
        be persisted.
        """
        now = _ensure_aware_utc(now)
        with self._lock:
            state = self.load(pipeline_id)
            if state.active:
                return False
            if not same_minute_ok and same_minute(state.timestamp, now):
                return False
            self.write(RunState(id=pipeline_id, active=True, timestamp=now))
            return True

    def mark_finished(self, pipeline_id: str, now: datetime) -> None:
        with self._lock:
            try:
                self.write(RunState(id=pipeline_id, active=False, timestamp=_ensure_aware_utc(now)))
            except StateIOError as exc:
                emit_event(
                    self.events,
                    "state.write_failed",
                    "ERROR",
                    f"{exc}; {pipeline_id} stays marked active until restart.",
                    pipeline_id=pipeline_id,
                )

    def recover(self, pipeline_id: str) -> bool:
        with self._lock:
            state = self.load(pipeline_id)
            if not state.active:
                return False
            state.active = False
            self.write(state)
            return True


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@dataclass
class JobResult:
    job: Job
    success: bool
    return_code: int
    duration_seconds: float
    stdout: str
    stderr: str
    error: Optional[str] = None


@dataclass
class StageResult:
    stage: str
    job_results: List[JobResult] = field(default_factory=list)
    skipped: bool = False

    @property
    def success(self) -> bool:
        return not self.skipped and all(result.success for result in self.job_results)

    @property
    def failed_jobs(self) -> List[JobResult]:
        return [result for result in self.job_results if not result.success]


@dataclass
class RunOutcome:
    pipeline_id: str
    run_id: str
    started_at: datetime
    ended_at: datetime
    stages: List[StageResult]

    @property
    def success(self) -> bool:
        return all(stage.success for stage in self.stages)

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def job_result(self, job_id: str) -> Optional[JobResult]:
        for stage in self.stages:
            for result in stage.job_results:
                if result.job.id == job_id:
                    return result
        return None


def build_command(job: Job) -> List[str]:
    if job.path.suffix == ".py":
        return [sys.executable, str(job.path), *job.args]
    return [str(job.path), *job.args]


def _launch_failure(job: Job, started: datetime, message: str) -> JobResult:
    return JobResult(
        job=job,
        success=False,
        return_code=-2,
        duration_seconds=(utc_now() - started).total_seconds(),
        stdout="",
        stderr=message,
        error=LAUNCH_ERROR,
    )


def run_job(
    job: Job,
    working_dir: Path,
    env_overrides: Optional[Dict[str, str]] = None,
) -> JobResult:
    started = utc_now()
    if not job.path.is_file():
        return _launch_failure(job, started, f"Script not found: {job.path}")
    if job.path.suffix != ".py" and not os.access(job.path, os.X_OK):
        return _launch_failure(job, started, f"Script is not executable: {job.path}")

    env = os.environ.copy()
    if env_overrides:
        env.update({k: v for k, v in env_overrides.items() if v is not None})
    try:
        result = subprocess.run(
            build_command(job),
            cwd=str(working_dir),
            capture_output=True,
            text=True,
            timeout=job.timeout,
            check=False,
            env=env,
        )
    except subprocess.TimeoutExpired:
        return JobResult(
            job=job,
            success=False,
            return_code=-1,
            duration_seconds=(utc_now() - started).total_seconds(),
            stdout="",
            stderr=f"Timed out after {job.timeout} seconds.",
            error=TIMEOUT_ERROR,
        )
    except OSError as exc:
        return _launch_failure(job, started, str(exc))

    return JobResult(
        job=job,
        success=result.returncode == 0,
        return_code=result.returncode,
        duration_seconds=(utc_now() - started).total_seconds(),
        stdout=result.stdout or "",
        stderr=result.stderr or "",
        error=None if result.returncode == 0 else EXIT_ERROR,
    )


Launcher = Callable[[Job, Path, Optional[Dict[str, str]]], JobResult]


class StageExecutor:
    """Runs a pipeline's stages in order and the jobs of each stage in parallel.

    A stage finishes only once every job in it has exited. After a failed
    stage the remaining stages are recorded as skipped.
    """

    def __init__(self, events: Optional[EventSink] = None, launcher: Launcher = run_job) -> None:
        self.events = events or EventSink()
        self.launcher = launcher

    def run(self, pipeline: Pipeline, run_id: Optional[str] = None) -> RunOutcome:
        started = utc_now()
        run_id = run_id or new_run_id(pipeline.id, started)
        stage_results: List[StageResult] = []
        failed_stage: Optional[str] = None

        for idx, stage in enumerate(pipeline.stages, start=1):
            if failed_stage is not None:
                stage_results.append(StageResult(stage=stage, skipped=True))
                emit_event(
                    self.events,
                    "stage.skipped",
                    "WARN",
                    f"Stage skipped: {pipeline.id}/{stage} (stage {failed_stage} failed)",
                    pipeline_id=pipeline.id,
                    run_id=run_id,
                    stage=stage,
                )
                continue
            emit_event(
                self.events,
                "stage.started",
                "INFO",
                f"[{idx}/{len(pipeline.stages)}] Running stage {pipeline.id}/{stage}",
                pipeline_id=pipeline.id,
                run_id=run_id,
                stage=stage,
            )
            result = self.run_stage(pipeline, stage, run_id)
            stage_results.append(result)
            if not result.success:
                failed_stage = stage

        return RunOutcome(
            pipeline_id=pipeline.id,
            run_id=run_id,
            started_at=started,
            ended_at=utc_now(),
            stages=stage_results,
        )

    def run_stage(self, pipeline: Pipeline, stage: str, run_id: str) -> StageResult:
        jobs = pipeline.jobs_for_stage(stage)
        completions: "Queue[Tuple[int, JobResult]]" = Queue()
        for index, job in enumerate(jobs):
            thread = threading.Thread(
                target=self._job_worker,
                args=(pipeline, job, run_id, index, completions),
                daemon=True,
                name=f"foreman-job-{job.breadcrumb}",
            )
            thread.start()

        results: List[Optional[JobResult]] = [None] * len(jobs)
        for _ in jobs:
            index, result = completions.get()
            results[index] = result
        return StageResult(stage=stage, job_results=[result for result in results if result is not None])

    def _job_worker(
        self,
        pipeline: Pipeline,
        job: Job,
        run_id: str,
        index: int,
        completions: "Queue[Tuple[int, JobResult]]",
    ) -> None:
        started = utc_now()
        result: Optional[JobResult] = None
        try:
            emit_event(
                self.events,
                "job.started",
                "INFO",
                f"Job started: {job.breadcrumb}",
                pipeline_id=pipeline.id,
                run_id=run_id,
                stage=job.stage,
                job_id=job.id,
                metadata={"script": job.script, "args": list(job.args)},
            )
            env = {
                "FOREMAN_RUN_ID": run_id,
                "FOREMAN_PIPELINE_ID": pipeline.id,
                "FOREMAN_STAGE": job.stage,
                "FOREMAN_JOB_ID": job.id,
            }
            try:
                result = self.launcher(job, pipeline.directory, env)
            except Exception as exc:
                logger.exception("[%s] Launcher raised for %s", run_id, job.breadcrumb)
                result = _launch_failure(job, started, str(exc))
            self._report_job(pipeline, run_id, result)
        except Exception:
            logger.exception("[%s] Failed to report job %s", run_id, job.breadcrumb)
        finally:
            if result is None:
                result = _launch_failure(job, started, "Job worker failed before launch.")
            # the stage barrier waits for exactly one entry per job
            completions.put((index, result))

    def _report_job(self, pipeline: Pipeline, run_id: str, result: JobResult) -> None:
        job = result.job
        fields: Dict[str, Any] = dict(
            pipeline_id=pipeline.id,
            run_id=run_id,
            stage=job.stage,
            job_id=job.id,
            success=result.success,
            return_code=result.return_code,
            duration_ms=int(result.duration_seconds * 1000),
            metadata={
                "error": result.error,
                "stdout_preview": result.stdout.strip()[:OUTPUT_PREVIEW_CHARS],
                "stderr_preview": result.stderr.strip()[:OUTPUT_PREVIEW_CHARS],
            },
        )
        if result.success:
            emit_event(
                self.events,
                "job.completed",
                "INFO",
                f"Job succeeded: {job.breadcrumb} ({result.duration_seconds:.2f}s)",
                **fields,
            )
            return
        emit_event(
            self.events,
            "job.failed",
            "ERROR",
            f"Job failed: {job.breadcrumb} ({result.error}, code={result.return_code}, "
            f"duration={result.duration_seconds:.2f}s)",
            **fields,
        )
        if result.stderr:
            logger.error("[%s] stderr: %s", run_id, result.stderr.strip())


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class Scheduler:
    """Refreshes the catalog on every tick and dispatches due pipelines.

    Runs execute on their own threads; the tick never waits for them. A run
    is claimed through ``StateStore.mark_started`` so two ticks can never both
    start the same pipeline.
    """

    def __init__(
        self,
        catalog: PipelineCatalog,
        store: StateStore,
        executor: Optional[StageExecutor] = None,
        events: Optional[EventSink] = None,
        refresh_seconds: int = DEFAULT_REFRESH_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        recover_on_start: bool = True,
    ) -> None:
        self.catalog = catalog
        self.store = store
        self.events = events or EventSink()
        self.executor = executor or StageExecutor(self.events)
        self.refresh_seconds = refresh_seconds
        self.clock = clock
        self.recover_on_start = recover_on_start
        self.outcomes: Dict[str, RunOutcome] = {}
        self._seen: Set[str] = set()
        self._seen_lock = threading.Lock()
        self._runs: Dict[str, threading.Thread] = {}
        self._runs_lock = threading.Lock()

    def running(self) -> List[str]:
        with self._runs_lock:
            return sorted(self._runs)

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        now = _ensure_aware_utc(now or self.clock())
        self.catalog.refresh()
        dispatched: List[str] = []
        for pipeline in self.catalog.pipelines():
            if not self._recover(pipeline.id):
                continue
            if not self._is_due(pipeline, now):
                continue
            if self._dispatch(pipeline, now):
                dispatched.append(pipeline.id)
        return dispatched

    def trigger(self, pipeline_id: str, now: Optional[datetime] = None) -> bool:
        pipeline = self.catalog.get(pipeline_id)
        if pipeline is None:
            raise ForemanError(f'Unknown pipeline "{pipeline_id}".')
        now = _ensure_aware_utc(now or self.clock())
        if not self._recover(pipeline_id):
            return False
        return self._dispatch(pipeline, now, same_minute_ok=True)

    def run_forever(self) -> None:
        logger.info(
            "Starting scheduler: pipelines=%s, refresh_seconds=%s",
            self.catalog.root,
            self.refresh_seconds,
        )
        while True:
            started = time.monotonic()
            self.tick()
            elapsed = time.monotonic() - started
            time.sleep(max(0.0, self.refresh_seconds - elapsed))

    def join(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._runs_lock:
                threads = list(self._runs.values())
            if not threads:
                return True
            for thread in threads:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(remaining)
            if deadline is not None and time.monotonic() >= deadline:
                return not self.running()

    def _recover(self, pipeline_id: str) -> bool:
        with self._seen_lock:
            return self._recover_locked(pipeline_id)

    def _recover_locked(self, pipeline_id: str) -> bool:
        if pipeline_id in self._seen:
            return True
        try:
            self.store.ensure(pipeline_id)
            recovered = self.recover_on_start and self.store.recover(pipeline_id)
        except StateIOError as exc:
            emit_event(
                self.events,
                "state.write_failed",
                "ERROR",
                f"{exc}; will retry state setup for {pipeline_id} on the next tick.",
                pipeline_id=pipeline_id,
            )
            return False
        if recovered:
            emit_event(
                self.events,
                "state.recovered",
                "WARN",
                f"Pipeline {pipeline_id} was marked active by a previous process; "
                "assuming an unclean shutdown and resetting it.",
                pipeline_id=pipeline_id,
            )
        self._seen.add(pipeline_id)
        return True

    def _is_due(self, pipeline: Pipeline, now: datetime) -> bool:
        if not pipeline.schedule.matches(now):
            return False
        state = self.store.load(pipeline.id)
        if state.active:
            logger.debug("Skipping %s: a run is already active.", pipeline.id)
            return False
        if same_minute(state.timestamp, now):
            logger.debug("Skipping %s: already ran at %s.", pipeline.id, state.timestamp.isoformat())
            return False
        return True

    def _dispatch(self, pipeline: Pipeline, now: datetime, same_minute_ok: bool = False) -> bool:
        try:
            claimed = self.store.mark_started(pipeline.id, now, same_minute_ok=same_minute_ok)
        except StateIOError as exc:
            emit_event(
                self.events,
                "state.write_failed",
                "ERROR",
                f"{exc}; not dispatching {pipeline.id}.",
                pipeline_id=pipeline.id,
            )
            return False
        if not claimed:
            logger.info("Skipping %s: a run is already active.", pipeline.id)
            return False

        run_id = new_run_id(pipeline.id, now)
        emit_event(
            self.events,
            "run.started",
            "INFO",
            f"Starting pipeline {pipeline.id} ({len(pipeline.stages)} stage(s), {len(pipeline.jobs)} job(s))",
            pipeline_id=pipeline.id,
            run_id=run_id,
            metadata={"expression": pipeline.expression, "stages": list(pipeline.stages)},
        )
        thread = threading.Thread(
            target=self._run_pipeline,
            args=(pipeline, run_id),
            daemon=True,
            name=f"foreman-run-{pipeline.id}",
        )
        with self._runs_lock:
            self._runs[pipeline.id] = thread
        thread.start()
        return True

    def _run_pipeline(self, pipeline: Pipeline, run_id: str) -> None:
        outcome: Optional[RunOutcome] = None
        try:
            outcome = self.executor.run(pipeline, run_id=run_id)
        except Exception:
            logger.exception("[%s] Pipeline %s aborted unexpectedly.", run_id, pipeline.id)
        finished = _ensure_aware_utc(self.clock())
        try:
            self.store.mark_finished(pipeline.id, finished)
            self._report_outcome(pipeline, run_id, outcome, finished)
        finally:
            with self._runs_lock:
                if outcome is not None:
                    self.outcomes[pipeline.id] = outcome
                # a run dispatched after mark_finished may already own the slot
                if self._runs.get(pipeline.id) is threading.current_thread():
                    del self._runs[pipeline.id]

    def _report_outcome(
        self,
        pipeline: Pipeline,
        run_id: str,
        outcome: Optional[RunOutcome],
        finished: datetime,
    ) -> None:
        success = outcome is not None and outcome.success
        failed_jobs: List[str] = []
        if outcome is not None:
            failed_jobs = [
                result.job.breadcrumb for stage in outcome.stages for result in stage.failed_jobs
            ]
        emit_event(
            self.events,
            "run.completed" if success else "run.failed",
            "INFO" if success else "ERROR",
            (
                f"Pipeline {pipeline.id} completed successfully"
                if success
                else f"Pipeline {pipeline.id} failed"
            )
            + (f" in {outcome.duration_seconds:.2f}s" if outcome is not None else ""),
            pipeline_id=pipeline.id,
            run_id=run_id,
            success=success,
            duration_ms=int(outcome.duration_seconds * 1000) if outcome is not None else None,
            metadata={
                "failed_jobs": failed_jobs,
                "skipped_stages": [stage.stage for stage in outcome.stages if stage.skipped] if outcome else [],
            },
        )
        nxt = next_run_after(pipeline.schedule, finished)
        if nxt is None:
            logger.info("[%s] Next scheduled run for %s: none", run_id, pipeline.id)
        else:
            logger.info("[%s] Next scheduled run for %s: %s", run_id, pipeline.id, nxt.isoformat())


# ---------------------------------------------------------------------------
# Settings and CLI
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Settings:
    pipelines_dir: Optional[Path] = None
    refresh_seconds: int = DEFAULT_REFRESH_SECONDS
    state_dir: Path = Path(DEFAULT_STATE_DIR)
    log_file: Optional[Path] = Path(DEFAULT_LOG_FILE)
    log_level: str = DEFAULT_LOG_LEVEL
    events_file: Optional[Path] = None

    def require_pipelines_dir(self) -> Path:
        if self.pipelines_dir is None:
            raise ConfigError(
                f"Error: pipelines directory not configured; set 'pipelines' in {DEFAULT_CONFIG} or pass --pipelines."
            )
        return self.pipelines_dir


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(f"Error: Failed to read {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def _resolve_path(value: Any, base_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path))
    return (raw if raw.is_absolute() else base_dir / raw).resolve()


def _optional_path(value: Any, base_dir: Path, field_path: str) -> Optional[Path]:
    if value is None:
        return None
    return _resolve_path(value, base_dir, field_path)


def parse_log_level(value: Any, field_path: str) -> str:
    level = ensure_str(value, field_path).upper()
    if level == "WARN":
        level = "WARNING"
    if level not in VALID_LOG_LEVELS:
        raise ConfigError(f'Error: {field_path} must be one of {sorted(VALID_LOG_LEVELS)}, got "{value}".')
    return level


def load_settings(config_path: Path, required: bool = False) -> Settings:
    base_dir = config_path.parent
    if not config_path.exists():
        if required:
            raise ConfigError(f"Error: Config file not found: {config_path}")
        return Settings(
            state_dir=(base_dir / DEFAULT_STATE_DIR).resolve(),
            log_file=(base_dir / DEFAULT_LOG_FILE).resolve(),
        )

    payload = _load_config_payload(config_path)
    unknown = set(payload.keys()) - {
        "pipelines",
        "refresh_seconds",
        "state_dir",
        "log_file",
        "log_level",
        "events_file",
    }
    if unknown:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown)}.")

    return Settings(
        pipelines_dir=_optional_path(payload.get("pipelines"), base_dir, "pipelines"),
        refresh_seconds=ensure_int(payload.get("refresh_seconds"), "refresh_seconds", DEFAULT_REFRESH_SECONDS),
        state_dir=_resolve_path(payload.get("state_dir", DEFAULT_STATE_DIR), base_dir, "state_dir"),
        log_file=_optional_path(payload.get("log_file", DEFAULT_LOG_FILE), base_dir, "log_file"),
        log_level=parse_log_level(payload.get("log_level", DEFAULT_LOG_LEVEL), "log_level"),
        events_file=_optional_path(payload.get("events_file"), base_dir, "events_file"),
    )


def resolve_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()
    settings = load_settings(config_path, required=args.config is not None)
    cwd = Path.cwd()
    if args.pipelines:
        settings = replace(settings, pipelines_dir=_resolve_path(args.pipelines, cwd, "--pipelines"))
    if args.state_dir:
        settings = replace(settings, state_dir=_resolve_path(args.state_dir, cwd, "--state-dir"))
    if args.log_level:
        settings = replace(settings, log_level=parse_log_level(args.log_level, "--log-level"))
    refresh = getattr(args, "refresh", None)
    if refresh is not None:
        if refresh <= 0:
            raise ConfigError("Error: --refresh must be >= 1")
        settings = replace(settings, refresh_seconds=refresh)
    return settings


def build_scheduler(settings: Settings, recover_on_start: bool = True) -> Scheduler:
    events = EventSink(settings.events_file)
    return Scheduler(
        catalog=PipelineCatalog(settings.require_pipelines_dir(), events),
        store=StateStore(settings.state_dir, events),
        executor=StageExecutor(events),
        events=events,
        refresh_seconds=settings.refresh_seconds,
        recover_on_start=recover_on_start,
    )


def _select_pipelines(catalog: PipelineCatalog, pipeline_id: Optional[str]) -> List[Pipeline]:
    if pipeline_id is None:
        return catalog.pipelines()
    pipeline = catalog.get(pipeline_id)
    if pipeline is None:
        raise ForemanError(f'Unknown pipeline "{pipeline_id}".')
    return [pipeline]


def command_validate(settings: Settings) -> int:
    catalog = PipelineCatalog(settings.require_pipelines_dir(), EventSink())
    changes = catalog.refresh()
    print(f"Pipelines directory: {catalog.root}")
    print(f"Loaded pipelines: {len(catalog)}")
    for pipeline in catalog.pipelines():
        print(
            f"- {pipeline.id}: {pipeline.expression} | stages={' > '.join(pipeline.stages)} | jobs={len(pipeline.jobs)}"
        )
    for directory, error in sorted(changes.failed.items()):
        print(f"! {directory}: {error}")
    for pipeline_id, directories in sorted(changes.conflicts.items()):
        print(f"! duplicate id {pipeline_id}: {', '.join(directories)}")
    return 1 if changes.failed or changes.conflicts else 0


def command_preview(settings: Settings, pipeline_id: Optional[str], count: int) -> int:
    catalog = PipelineCatalog(settings.require_pipelines_dir(), EventSink())
    catalog.refresh()
    store = StateStore(settings.state_dir, EventSink())
    now_utc = utc_now()

    for pipeline in _select_pipelines(catalog, pipeline_id):
        state = store.load(pipeline.id)
        print("=" * 80)
        print(f"Pipeline: {pipeline.id} ({pipeline.directory})")
        print(f"Expression: {pipeline.expression}")
        print(f"Active: {state.active} | last run: {state.timestamp.isoformat()}")
        print("Stages:")
        for stage in pipeline.stages:
            jobs = pipeline.jobs_for_stage(stage)
            listed = ", ".join(job.id for job in jobs) if jobs else "(no jobs)"
            print(f"- {stage}: {listed}")
        print(f"Next {count} run(s):")
        runs = next_run_times(pipeline.schedule, count, now_utc=now_utc)
        if not runs:
            print("- none")
        for run_dt in runs:
            print(f"- {run_dt.isoformat()}")
    print("=" * 80)
    return 0


def command_run(settings: Settings, pipeline_id: str, respect_schedule: bool) -> int:
    scheduler = build_scheduler(settings, recover_on_start=False)
    scheduler.catalog.refresh()
    pipeline = _select_pipelines(scheduler.catalog, pipeline_id)[0]
    if respect_schedule and not pipeline.schedule.matches(utc_now()):
        logger.info("Skipping %s: not due now.", pipeline.id)
        return 0
    if not scheduler.trigger(pipeline.id):
        logger.error("Pipeline %s is already running.", pipeline.id)
        return 1
    scheduler.join()
    outcome = scheduler.outcomes.get(pipeline.id)
    return 0 if outcome is not None and outcome.success else 1


def command_daemon(settings: Settings) -> int:
    scheduler = build_scheduler(settings)
    if settings.refresh_seconds > 60:
        logger.warning(
            "refresh_seconds=%s is longer than a minute; some matching minutes will be missed.",
            settings.refresh_seconds,
        )
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted by user; %s run(s) still in flight.", len(scheduler.running()))
        return 130
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help=f"Path to foreman YAML settings (default: {DEFAULT_CONFIG})")
    common.add_argument("--pipelines", help="Pipelines root directory (overrides settings)")
    common.add_argument("--state-dir", help="Run state directory (overrides settings)")
    common.add_argument("--log-level", help="Log level (overrides settings)")

    parser = argparse.ArgumentParser(
        description="foreman pipeline scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", parents=[common], help="Load and validate every pipeline definition")

    preview_parser = subparsers.add_parser("preview", parents=[common], help="Show upcoming runs")
    preview_parser.add_argument("--pipeline", help="Preview a single pipeline by id")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    run_parser = subparsers.add_parser("run", parents=[common], help="Run one pipeline now")
    run_parser.add_argument("--pipeline", required=True, help="Pipeline id")
    run_parser.add_argument(
        "--respect-schedule",
        action="store_true",
        help="Only run the pipeline if it is currently due",
    )

    daemon_parser = subparsers.add_parser("daemon", parents=[common], help="Run the scheduler loop")
    daemon_parser.add_argument(
        "--refresh",
        type=int,
        help=f"Refresh interval in seconds (default: {DEFAULT_REFRESH_SECONDS})",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        settings = resolve_settings(args)
        setup_logging(settings.log_level, settings.log_file)
        if args.command == "validate":
            return command_validate(settings)
        if args.command == "preview":
            if args.count <= 0:
                raise ConfigError("Error: --count must be >= 1")
            return command_preview(settings, pipeline_id=args.pipeline, count=args.count)
        if args.command == "run":
            return command_run(settings, pipeline_id=args.pipeline, respect_schedule=args.respect_schedule)
        if args.command == "daemon":
            return command_daemon(settings)
        raise ForemanError(f"Unsupported command: {args.command}")
    except ForemanError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
