"""Error taxonomy shared by the product workflows and scheduler.

Error strings recorded on failed jobs are stable codes followed by detail so
they can be grouped in dashboards and used for manual replay.
"""

MAX_ERROR_MESSAGE_LENGTH = 500


class PayhookError(Exception):
    """Base class for classified pipeline failures."""

    code = "unknown"

    def describe(self) -> str:
        return f"{self.code}:{self}"


class ConfigurationError(PayhookError):
    """A required secret or destination is not configured."""

    code = "configuration_missing"


class MalformedInputError(PayhookError):
    """Derived input failed strict coercion; retrying cannot fix it."""

    code = "malformed_input"

    def __init__(self, field: str, raw_value, detail: str) -> None:
        self.field = field
        self.raw_value = raw_value
        self.detail = detail
        super().__init__(
            f"field={field} type={type(raw_value).__name__} value={raw_value!r} detail={detail}"
        )


class SnapshotMismatchError(PayhookError):
    """The durable snapshot no longer matches the event that triggered the job."""

    code = "snapshot_mismatch"


class UpstreamError(PayhookError):
    """An outbound call failed, either terminally or after exhausting retries."""

    def __init__(
        self,
        dependency: str,
        status_code: int,
        *,
        transient: bool,
        attempts: int,
        duration_ms: int,
        detail: str = "",
    ) -> None:
        self.dependency = dependency
        self.status_code = status_code
        self.transient = transient
        self.attempts = attempts
        self.duration_ms = duration_ms
        self.detail = detail
        super().__init__(f"{dependency}:{status_code} attempts={attempts} {detail}".rstrip())

    @property
    def code(self) -> str:  # type: ignore[override]
        return "upstream_retry_exhausted" if self.transient else "upstream_error"


def truncate_error(message: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    """Clamp error text stored on job rows."""

    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."
