from typing import Any, Optional


def ok(data: Any = None, message: Optional[str] = None, **extra: Any) -> dict:
    """Standard success envelope."""
    body: dict = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    body.update(extra)
    return body
