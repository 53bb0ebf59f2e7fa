"""
Container-side runner for the container backend.

This file is never imported by sandbridge: its text is passed to
``python -u -c`` inside the container. It depends on the standard
library only, since the sandbox image carries nothing else.

Protocol (one JSON object per line):

    host -> container   {"op": "run", "source", "entrypoint", "functions", "capture"}
                        {"op": "return", "id", "value"}
                        {"op": "raise", "id", "message"}
    container -> host   {"op": "call", "id", "name", "args", "kwargs"}
                        {"op": "output", "stream", "text"}
                        {"op": "done", "value"}
                        {"op": "error", "kind", "message", "traceback"}
"""

import builtins
import json
import sys
import traceback

_channel = sys.stdout
_requests = sys.stdin
_next_id = 0


def _send(message):
    _channel.write(json.dumps(message) + "\n")
    _channel.flush()


class _Stream:
    """File-like object turning writes into output messages."""

    def __init__(self, name, capture):
        self.name = name
        self.capture = capture

    def write(self, text):
        if self.capture and text:
            _send({"op": "output", "stream": self.name, "text": str(text)})
        return len(text)

    def flush(self):
        pass

    def isatty(self):
        return False


def _call(name, args, kwargs):
    global _next_id
    _next_id += 1
    call_id = _next_id
    _send({"op": "call", "id": call_id, "name": name, "args": list(args), "kwargs": kwargs})

    line = _requests.readline()
    if not line:
        raise SystemExit(1)
    reply = json.loads(line)
    if reply.get("id") != call_id:
        raise RuntimeError("Out of order reply for call %d" % call_id)
    if reply.get("op") == "raise":
        raise RuntimeError(reply.get("message", "Tool call failed"))
    return reply.get("value")


def _binding(name):
    def binding(*args, **kwargs):
        return _call(name, args, kwargs)

    binding.__name__ = name
    binding.__qualname__ = name
    return binding


def main():
    line = _requests.readline()
    if not line:
        return
    request = json.loads(line)
    capture = request.get("capture", True)
    sys.stdout = _Stream("stdout", capture)
    sys.stderr = _Stream("stderr", capture)

    namespace = {"__name__": "__sandbox__", "__builtins__": builtins}
    for name in request.get("functions", []):
        namespace[name] = _binding(name)

    try:
        code = compile(request["source"], "sandbox.py", "exec")
    except SyntaxError as exc:
        _send({
            "op": "error",
            "kind": "compile",
            "message": "Code compilation failed: SyntaxError: %s (line %s)" % (exc.msg, exc.lineno),
        })
        return

    try:
        exec(code, namespace)
        value = namespace[request["entrypoint"]]()
    except (Exception, SystemExit) as exc:
        _send({
            "op": "error",
            "kind": "runtime",
            "message": "%s: %s" % (type(exc).__name__, exc),
            "traceback": traceback.format_exc(),
        })
        return

    try:
        payload = json.dumps(value, allow_nan=False)
    except (TypeError, ValueError, RecursionError) as exc:
        _send({
            "op": "error",
            "kind": "serialization",
            "message": "Return value must be JSON-serializable: %s" % exc,
        })
        return
    _channel.write('{"op": "done", "value": ' + payload + "}\n")
    _channel.flush()


main()
