import uuid
from datetime import datetime, timezone


def make_experiment_id() -> str:
    return str(uuid.uuid4())


def make_timestamp_tag() -> str:
    # e.g., 20250818T052310Z
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
