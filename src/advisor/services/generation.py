"""Create -> poll -> fetch -> extract workflow for non-streaming bot tasks.

The upstream task API answers task creation immediately with an id and a
status; the answer only becomes available once a status poll reports
``completed``. Polling is bounded (``max_attempts`` sleeps of
``poll_interval`` seconds) and is never retried past the cap. Upstream
transport failures at any step propagate unchanged.
"""

from __future__ import annotations

import logging
import os
import re
import time
import uuid
import warnings
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from ..domain.errors import GenerationFailedError, GenerationTimeoutError, PersistenceWarning, TransportError
from ..domain.models import PosterHistoryEntry
from ..infrastructure.poster_log import PosterLog, get_poster_log, normalize_input_key
from ..infrastructure.user_store import UserStore, get_user_store
from ..observability.metrics import POSTER_REQUESTS
from .bot_client import BotApiClient, ChatTask, build_chat_payload
from .bot_registry import BotKind, BotRegistry


LOG = logging.getLogger("advisor.generation")

_MD_IMAGE_RE = re.compile(r"!\[.*?\]\((.*?)\)")
_BARE_URL_RE = re.compile(r"https?://[^\s]+")


class TaskStatus(str, Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    REQUIRES_ACTION = "requires_action"
    CANCELED = "canceled"


_PENDING = (TaskStatus.CREATED.value, TaskStatus.IN_PROGRESS.value)


class TaskClient(Protocol):
    def create_chat(self, payload: Dict[str, Any]) -> ChatTask: ...
    def retrieve_status(self, task: ChatTask) -> str: ...
    def list_messages(self, task: ChatTask) -> List[Dict[str, Any]]: ...


@dataclass
class GenerationOutcome:
    task: ChatTask
    status: str
    attempts: int
    answer: str


def extract_artifact(content: Optional[str]) -> Optional[str]:
    """First markdown image target, else the first bare http(s) URL."""
    if not content:
        return None
    match = _MD_IMAGE_RE.search(content)
    if match and match.group(1):
        return match.group(1)
    match = _BARE_URL_RE.search(content)
    if match:
        return match.group(0)
    return None


class GenerationTaskRunner:
    def __init__(
        self,
        client: TaskClient,
        poll_interval: float = 1.0,
        max_attempts: int = 60,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    def create(self, payload: Dict[str, Any]) -> ChatTask:
        return self._client.create_chat(payload)

    def wait_for_completion(self, task: ChatTask) -> int:
        """Poll until the task leaves created/in_progress; returns the poll count."""
        status = task.status
        attempts = 0
        while status in _PENDING and attempts < self.max_attempts:
            self._sleep(self.poll_interval)
            attempts += 1
            status = self._client.retrieve_status(task)
            LOG.debug("generation_poll", extra={"chat_id": task.id, "attempt": attempts, "status": status})
        task.status = status
        if status in _PENDING:
            LOG.warning("generation_timeout", extra={"chat_id": task.id, "attempts": attempts})
            raise GenerationTimeoutError(attempts, last_status=status)
        if status != TaskStatus.COMPLETED.value:
            LOG.warning("generation_failed", extra={"chat_id": task.id, "status": status})
            raise GenerationFailedError(f"Generation ended with status {status}", status=status)
        return attempts

    def fetch_answer(self, task: ChatTask) -> str:
        """Content of the last assistant ``answer`` message."""
        messages = self._client.list_messages(task)
        answers = [
            m for m in messages
            if isinstance(m, dict) and m.get("role") == "assistant" and m.get("type") == "answer"
        ]
        if not answers:
            raise GenerationFailedError("No answer message in generation result", status=task.status)
        return str(answers[-1].get("content") or "")

    def run(self, payload: Dict[str, Any]) -> GenerationOutcome:
        task = self.create(payload)
        attempts = self.wait_for_completion(task)
        answer = self.fetch_answer(task)
        LOG.info("generation_completed", extra={"chat_id": task.id, "attempts": attempts, "chars": len(answer)})
        return GenerationOutcome(task=task, status=task.status, attempts=attempts, answer=answer)


@dataclass
class PosterResult:
    image_url: Optional[str]
    text: str
    cached: bool = False


def compose_prompt(area: str, season: Optional[str] = None) -> str:
    area = area.strip()
    season = (season or "").strip()
    return f"{area}，{season}" if season else area


class PosterWorkflow:
    """Poster generation with a 30-day input cache and per-user history."""

    def __init__(self, runner: GenerationTaskRunner, log: PosterLog, users: UserStore, bot_id: str) -> None:
        self._runner = runner
        self._log = log
        self._users = users
        self.bot_id = bot_id

    def _remember(self, user_id: Optional[str], url: str, area: str, season: Optional[str], email: Optional[str], nick: Optional[str]) -> None:
        if not user_id:
            return
        entry = PosterHistoryEntry(
            id=uuid.uuid4().hex,
            url=url,
            area=area,
            season=season,
            created_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        try:
            self._users.add_poster(user_id, entry, email=email, nick=nick)
        except Exception as exc:
            # History is best effort; the poster itself was produced.
            LOG.warning("poster_history_save_failed", extra={"user_id": user_id, "err": str(exc)})
            warnings.warn(PersistenceWarning(f"Poster history write failed: {exc}"), stacklevel=2)

    def run(
        self,
        area: str,
        season: Optional[str] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        nick: Optional[str] = None,
    ) -> PosterResult:
        if not area or not area.strip():
            raise ValueError("area is required")
        key = normalize_input_key(area, season)

        hit = self._log.lookup(key)
        if hit is not None and hit.result_artifact:
            LOG.info("poster_cache_hit", extra={"input_key": key, "entry_id": hit.id})
            POSTER_REQUESTS.labels(outcome="cached").inc()
            self._remember(user_id, hit.result_artifact, area, season, email, nick)
            return PosterResult(image_url=hit.result_artifact, text=hit.raw_response_text, cached=True)

        payload = build_chat_payload(
            self.bot_id,
            user_id=f"user_poster_{int(time.time() * 1000)}",
            message=compose_prompt(area, season),
            stream=False,
        )
        try:
            outcome = self._runner.run(payload)
        except GenerationTimeoutError:
            POSTER_REQUESTS.labels(outcome="timeout").inc()
            raise
        except (GenerationFailedError, TransportError):
            POSTER_REQUESTS.labels(outcome="failed").inc()
            raise

        artifact = extract_artifact(outcome.answer)
        if not artifact:
            LOG.info("poster_no_artifact", extra={"input_key": key, "chat_id": outcome.task.id})
            POSTER_REQUESTS.labels(outcome="no_artifact").inc()
            return PosterResult(image_url=None, text=outcome.answer)

        self._log.append(key, area, season, artifact, outcome.answer)
        self._remember(user_id, artifact, area, season, email, nick)
        POSTER_REQUESTS.labels(outcome="generated").inc()
        return PosterResult(image_url=artifact, text=outcome.answer)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def get_task_runner(client: Optional[TaskClient] = None) -> GenerationTaskRunner:
    return GenerationTaskRunner(
        client or BotApiClient(),
        poll_interval=_env_float("ADVISOR_POSTER_POLL_INTERVAL", 1.0),
        max_attempts=_env_int("ADVISOR_POSTER_MAX_ATTEMPTS", 60),
    )


def get_poster_workflow(client: Optional[TaskClient] = None) -> PosterWorkflow:
    """Wire the workflow from environment configuration.

    The poster bot id is checked before the API token so a missing bot is
    reported as such.
    """
    bot = BotRegistry().resolve_kind(BotKind.POSTER)
    return PosterWorkflow(get_task_runner(client), get_poster_log(), get_user_store(), bot.bot_id)
