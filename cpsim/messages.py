"""OCPP-J framing.

Frames are JSON arrays::

    [2, "<id>", "<Action>", {payload}]            CALL
    [3, "<id>", {payload}]                        CALLRESULT
    [4, "<id>", "<code>", "<description>", {}]    CALLERROR

Decoding is permissive: anything that does not look like one of the three
shapes is logged and dropped so that a misbehaving server can never take
down the receive loop.
"""
import json
import logging
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional, Union

from ocpp.charge_point import remove_nones, snake_to_camel_case
from ocpp.messages import Call, CallError, CallResult, MessageType

_logger = logging.getLogger(__name__)

Message = Union[Call, CallResult, CallError]


def new_unique_id() -> str:
    """Time-ordered id: UTC timestamp to the microsecond plus a random suffix."""
    now = datetime.now(timezone.utc)
    return f"{now:%Y%m%d%H%M%S%f}-{uuid.uuid4().hex[:8]}"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def payload_from(obj: Any) -> dict:
    """Turn an ``ocpp.v16.call``/``call_result`` dataclass into a wire payload."""
    return snake_to_camel_case(remove_nones(asdict(obj)))


def build_call(obj: Any) -> Call:
    """Frame a ``ocpp.v16.call`` dataclass as a CALL with a fresh id."""
    return Call(
        unique_id=new_unique_id(),
        action=type(obj).__name__,
        payload=payload_from(obj),
    )


def encode(message: Message) -> str:
    return message.to_json()


def decode(raw: Union[str, bytes], logger: Optional[logging.Logger] = None) -> Optional[Message]:
    """Parse one frame; returns ``None`` for anything that should be ignored."""
    logger = logger or _logger
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Ignoring unparsable frame ({e}): {raw!r}")
        return None

    if not isinstance(msg, list) or len(msg) < 3:
        logger.warning(f"Ignoring frame with unexpected shape: {raw!r}")
        return None

    kind, unique_id = msg[0], msg[1]
    if isinstance(kind, bool) or not isinstance(kind, int):
        logger.warning(f"Ignoring frame with non-integer message type: {raw!r}")
        return None
    if not isinstance(unique_id, str):
        logger.warning(f"Ignoring frame without a string unique id: {raw!r}")
        return None

    if kind == MessageType.Call:
        action = msg[2]
        if not isinstance(action, str):
            logger.warning(f"Ignoring CALL without an action name: {raw!r}")
            return None
        payload = msg[3] if len(msg) > 3 else {}
        return Call(unique_id=unique_id, action=action, payload=payload)

    if kind == MessageType.CallResult:
        return CallResult(unique_id=unique_id, payload=msg[2])

    if kind == MessageType.CallError:
        return CallError(
            unique_id=unique_id,
            error_code=msg[2],
            error_description=msg[3] if len(msg) > 3 else "",
            error_details=msg[4] if len(msg) > 4 else {},
        )

    logger.warning(f"Ignoring frame with unknown message type {kind}: {raw!r}")
    return None
