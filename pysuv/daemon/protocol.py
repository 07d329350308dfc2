"""JSON-lines protocol for daemon RPC.

Every message is one UTF-8 JSON object terminated by a newline, so a
single connection can carry any number of requests and a response can be
a stream of items.

Request format:
    {
        "method": "Status" | "Create" | "Start" | "Stop" | "Tail"
                  | "Shutdown" | "Version",
        "params": {...}          # Method-specific parameters
    }

Response format:
    {
        "status": "ok" | "error" | "stream" | "end",
        "result": dict | None,   # Call result, or one stream item
        "error": str | None,     # Error message if status == "error"
    }

A streaming call answers with zero or more "stream" frames followed by a
single "end" frame (or an "error" frame).
"""

import json
from typing import Any, Dict, Optional

STATUS_OK = "ok"
STATUS_ERROR = "error"
STATUS_STREAM = "stream"
STATUS_END = "end"


def serialize_request(method: str, params: Optional[Dict[str, Any]] = None) -> bytes:
    """
    Serialize request to one newline-terminated frame.

    Args:
        method: Remote operation name
        params: Method parameters

    Returns:
        UTF-8 encoded JSON bytes ending in a newline
    """
    request = {
        "method": method,
        "params": params or {},
    }
    return json.dumps(request).encode("utf-8") + b"\n"


def deserialize_request(data: bytes) -> Dict[str, Any]:
    """
    Deserialize request from one frame.

    Raises:
        json.JSONDecodeError: If data is not valid JSON
        ValueError: If the frame is not a JSON object
    """
    request = json.loads(data.decode("utf-8"))
    if not isinstance(request, dict):
        raise ValueError("Request must be a JSON object")
    return request


def serialize_response(
    status: str,
    result: Any = None,
    error: Optional[str] = None,
) -> bytes:
    """
    Serialize response to one newline-terminated frame.

    Args:
        status: "ok", "error", "stream" or "end"
        result: Call result or stream item
        error: Error message if status is "error"
    """
    response = {
        "status": status,
        "result": result,
        "error": error,
    }
    return json.dumps(response).encode("utf-8") + b"\n"


def deserialize_response(data: bytes) -> Dict[str, Any]:
    """
    Deserialize response from one frame.

    Raises:
        json.JSONDecodeError: If data is not valid JSON
        ValueError: If the frame is not a JSON object with a status
    """
    response = json.loads(data.decode("utf-8"))
    if not isinstance(response, dict) or "status" not in response:
        raise ValueError("Response must be a JSON object with a 'status' key")
    return response
