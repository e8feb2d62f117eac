from fastapi import Header


def get_actor(x_actor: str | None = Header(default=None)) -> str:
    """Caller identity for the audit trail; authentication happens upstream."""
    return (x_actor or "anonymous").strip()[:64] or "anonymous"
