"""Cloud relay: poll a paired Fog cloud for jobs and run them locally."""

import logging
import threading
from dataclasses import asdict, dataclass

import httpx

from fog.core import commands
from fog.core.runner import Runner
from fog.core.state import CLOUD_DEVICE_TOKEN_KEY, Store
from fog.db.models import FAILED
from fog.errors import ConfigError, FogError, ValidationError

logger = logging.getLogger(__name__)

CLOUD_URL_SETTING = "cloud_url"
CLOUD_DEVICE_ID_SETTING = "cloud_device_id"
DEFAULT_POLL_INTERVAL = 2.0
HTTP_TIMEOUT = 30.0


class RelayError(Exception):
    """Raised when the cloud API rejects a request."""


@dataclass
class CompletePayload:
    success: bool
    error: str = ""
    session_id: str = ""
    branch: str = ""
    pr_url: str = ""


class CloudClient:
    def __init__(
        self,
        base_url: str,
        device_id: str,
        device_token: str,
        transport: httpx.BaseTransport | None = None,
    ):
        if not base_url.strip():
            raise ConfigError("cloud url is required")
        if not device_id.strip() or not device_token.strip():
            raise ConfigError("device auth is required")
        self._client = httpx.Client(
            base_url=base_url.strip().rstrip("/"),
            timeout=HTTP_TIMEOUT,
            transport=transport,
            headers={
                "Authorization": f"Bearer {device_token.strip()}",
                "X-Fog-Device-ID": device_id.strip(),
                "User-Agent": "fogd",
            },
        )

    def close(self):
        self._client.close()

    def claim_job(self) -> dict | None:
        resp = self._client.post("/v1/device/jobs/claim")
        if resp.status_code == 204:
            return None
        _raise_for_status(resp)
        return resp.json()

    def complete_job(self, job_id: str, payload: CompletePayload):
        if not job_id.strip():
            raise RelayError("job id is required")
        resp = self._client.post(f"/v1/device/jobs/{job_id.strip()}/complete", json=asdict(payload))
        _raise_for_status(resp)


def _raise_for_status(resp: httpx.Response):
    if resp.status_code // 100 == 2:
        return
    try:
        message = resp.json().get("error", "")
    except ValueError:
        message = resp.text.strip()
    raise RelayError(f"cloud request failed: status={resp.status_code} {message}".strip())


class Relay:
    def __init__(
        self,
        client: CloudClient,
        store: Store,
        runner: Runner,
        stop_event: threading.Event,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.client = client
        self.store = store
        self.runner = runner
        self.stop_event = stop_event
        self.poll_interval = poll_interval if poll_interval > 0 else DEFAULT_POLL_INTERVAL
        self._thread: threading.Thread | None = None

    @classmethod
    def from_store(
        cls,
        store: Store,
        runner: Runner,
        stop_event: threading.Event,
        cloud_url: str = "",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> "Relay":
        if not cloud_url:
            cloud_url, _ = store.get_setting(CLOUD_URL_SETTING)
        device_id, _ = store.get_setting(CLOUD_DEVICE_ID_SETTING)
        device_token, _ = store.get_secret(CLOUD_DEVICE_TOKEN_KEY)
        client = CloudClient(cloud_url, device_id, device_token)
        return cls(client, store, runner, stop_event, poll_interval)

    def start(self):
        self._thread = threading.Thread(target=self.run, name="cloud-relay", daemon=True)
        self._thread.start()

    def join(self, timeout: float | None = None):
        if self._thread:
            self._thread.join(timeout=timeout)

    def run(self):
        logger.info("cloud relay polling every %.1fs", self.poll_interval)
        while not self.stop_event.is_set():
            try:
                processed = self.process_one()
            except (httpx.HTTPError, RelayError, ValueError) as e:
                logger.warning("cloud relay error: %s", e)
                processed = False
            except Exception:
                logger.exception("cloud relay loop crashed")
                processed = False
            if not processed:
                self.stop_event.wait(self.poll_interval)
        self.client.close()
        logger.info("cloud relay stopped")

    def process_one(self) -> bool:
        """Claim, run and complete one job. Returns False when none was waiting."""
        job = self.client.claim_job()
        if job is None:
            return False
        payload = self.handle_job(job)
        self.client.complete_job(str(job.get("id", "")), payload)
        return True

    def handle_job(self, job: dict) -> CompletePayload:
        kind = (job.get("kind") or "").strip()
        try:
            if kind == "start_session":
                task, repo_path = self._build_start(job)
            elif kind == "follow_up":
                task, repo_path = self._build_follow_up(job)
            else:
                return CompletePayload(success=False, error=f"unknown job kind {kind!r}")
        except FogError as e:
            return CompletePayload(success=False, error=str(e))

        task = self.runner.execute(task, repo_path)
        return CompletePayload(
            success=task.state != FAILED,
            error=task.error or "",
            session_id=task.id,
            branch=task.branch,
            pr_url=task.metadata.get("pr_url", ""),
        )

    def _build_start(self, job: dict):
        parsed = commands.ParsedCommand(
            repo=(job.get("repo") or "").strip(),
            prompt=(job.get("prompt") or "").strip(),
            tool=(job.get("tool") or "").strip(),
            model=(job.get("model") or "").strip(),
            autopr=bool(job.get("autopr", False)),
            branch=(job.get("branch_name") or "").strip(),
            commit_msg=(job.get("commit_msg") or "").strip(),
        )
        if not parsed.repo:
            raise ValidationError("repo is required")
        if not parsed.prompt:
            raise ValidationError("prompt is required")
        return commands.build_task(self.store, parsed, "cloud")

    def _build_follow_up(self, job: dict):
        session_id = (job.get("session_id") or "").strip()
        if not session_id:
            raise ValidationError("missing session_id")
        parent = self.store.get_task(session_id)
        if parent is None:
            raise ValidationError(f"unknown session: {session_id}")
        return commands.build_follow_up(self.store, parent, job.get("prompt") or "", "cloud")
