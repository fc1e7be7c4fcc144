import hashlib
import hmac
from datetime import datetime, timezone

# Query parameters that mark a request as a self-triggered job call
JOB_ID_PARAM = "_backjob_id"
CHECK_PARAM = "_backjob_check"
MONITOR_PARAM = "_backjob_monitor"


def utcnow() -> datetime:
    """Naive UTC timestamp with second precision, as stored in the job table."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def clamp(value: int, low: int = 0, high: int = 100) -> int:
    return max(low, min(high, int(value)))


def check_token(job_id, key: str) -> str:
    """
    Keyed digest of a job id. Sent along with every self-call so the
    receiving request can tell a genuine trigger from a forged job id.
    """
    return hmac.new(key.encode(), str(job_id).encode(), hashlib.sha256).hexdigest()


def verify_check_token(job_id, token: str, key: str) -> bool:
    return hmac.compare_digest(check_token(job_id, key).encode(), token.encode())
