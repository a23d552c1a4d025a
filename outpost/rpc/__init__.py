"""
Wire protocol shared by the outpost client and relay.

All traffic between the two ends consists of flat JSON-RPC style messages:

    {"version": "2.0", "method": ..., "params": ..., "result": ..., "error": ...,
     "id": ...}

Every message is serialized as one line of compact JSON terminated by a newline and
written to a persistent TCP stream. JSON escapes control characters inside strings,
so a serialized message never contains a raw newline, and output of interactive
programs (ANSI escape sequences, carriage returns, bells) survives a round trip
unchanged. This makes framing as simple as splitting the stream on newlines.

The id of a message is overloaded:

* null for notifications (fire-and-forget requests and unrouted errors)
* a request-scoped token for single-shot calls like fs.readFile
* a session key for the lifetime of a terminal session, in which case many
  responses (ready, data..., exit) share that id
* the reserved GREETING_ID for the one-time greeting of the relay

Errors close to the data are sent as typed error payloads rather than opaque
exceptions. Filesystem errors carry the errno name (ENOENT, EACCES, ...) as their
code, which allows the client to recreate the original builtin exception (like
FileNotFoundError) faithfully, just like the relay raised it.
"""

from dataclasses import asdict, dataclass, is_dataclass
import errno
import json
from typing import Any, Dict, List, Optional, Union

from outpost.constants import JSONRPC_VERSION

# Reserved error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Filesystem error codes are errno names
NOT_FOUND = "ENOENT"
PERMISSION_DENIED = "EACCES"

MessageId = Union[str, int, None]
ErrorCode = Union[int, str]


class ProtocolError(ValueError):
    """Exception raised when a frame does not contain a valid message."""

    def __init__(self, message: str, code: int = PARSE_ERROR) -> None:
        """Instantiate with the error code to report to the sender of the frame."""
        super().__init__(message)
        self.code = code


class RpcError(Exception):
    """Error payload of a response, usable as an exception on either end."""

    _messages = {
        "ENOENT": "file not found",
        "EACCES": "permission denied",
        "EISDIR": "is a directory",
        "ENOTDIR": "not a directory",
        "EEXIST": "file exists",
    }

    def __init__(self, code: ErrorCode, message: str, data: Any = None) -> None:
        """Instantiate an error with a reserved code or errno name."""
        super().__init__(code, message, data)

        self.code = code
        self.message = message
        self.data = data

    def __str__(self) -> str:
        return f"{self.message} ({self.code})"

    def to_dict(self) -> Dict[str, Any]:
        """Turn the error into the error payload of a response."""
        payload = {"code": self.code, "message": self.message}

        if self.data is not None:
            payload["data"] = self.data

        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "RpcError":
        """Reconstruct an error from the error payload of a response."""
        if not isinstance(payload, dict) or "code" not in payload:
            return cls(INTERNAL_ERROR, f"malformed error payload: {payload!r}")

        message = str(payload.get("message", ""))

        return cls(payload["code"], message, payload.get("data"))

    @classmethod
    def from_exception(cls, exc: BaseException) -> "RpcError":
        """
        Classify an exception raised while handling a request.

        OS errors keep their errno name as code so that "not found" can be told apart
        from "permission denied" and other I/O errors. Anything else is reported as an
        internal error.
        """
        if isinstance(exc, RpcError):
            return exc

        if isinstance(exc, OSError) and exc.errno in errno.errorcode:
            code = errno.errorcode[exc.errno]
            description = cls._messages.get(code, exc.strerror or code)

            if exc.filename is not None:
                message = f"{description}: {exc.filename}"
            else:
                message = description

            return cls(code, message, {"errno": exc.errno, "path": exc.filename})

        return cls(INTERNAL_ERROR, str(exc) or exc.__class__.__name__)

    def to_exception(self) -> Exception:
        """
        Recreate the exception that caused this error.

        Errors with an errno name as code become the matching builtin OSError
        subclass (OSError picks FileNotFoundError for ENOENT, etc.). All other errors
        are raised as RpcError itself.
        """
        if isinstance(self.code, str) and hasattr(errno, self.code):
            path = self.data.get("path") if isinstance(self.data, dict) else None

            if path is not None:
                return OSError(getattr(errno, self.code), self.message, path)
            else:
                return OSError(getattr(errno, self.code), self.message)

        return self


@dataclass
class Message:
    """A single request, notification or response on the wire."""

    id: MessageId = None
    method: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    result: Any = None
    error: Optional[RpcError] = None
    version: str = JSONRPC_VERSION

    @property
    def is_request(self) -> bool:
        return self.method is not None

    @property
    def is_notification(self) -> bool:
        return self.method is not None and self.id is None

    @staticmethod
    def request(
        method: str, params: Optional[Dict[str, Any]] = None, id: MessageId = None
    ) -> "Message":
        """Compose a request, or a notification if no id is given."""
        return Message(id=id, method=method, params=params)

    @staticmethod
    def response(id: MessageId, result: Any) -> "Message":
        """Compose a successful response."""
        return Message(id=id, result=result)

    @staticmethod
    def failure(id: MessageId, error: RpcError) -> "Message":
        """Compose an error response."""
        return Message(id=id, error=error)

    def param(self, name: str, default: Any = None) -> Any:
        """Look up a named parameter of a request."""
        if self.params is None:
            return default
        else:
            return self.params.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        """Turn the message into the flat object that is sent over the wire."""
        obj: Dict[str, Any] = {"version": self.version}

        if self.method is not None:
            obj["method"] = self.method

            if self.params is not None:
                obj["params"] = self.params
        elif self.error is not None:
            obj["error"] = self.error.to_dict()
        else:
            obj["result"] = self.result

        obj["id"] = self.id

        return obj

    @staticmethod
    def from_dict(obj: Any) -> "Message":
        """Validate a decoded flat object and turn it into a message."""
        if not isinstance(obj, dict):
            raise ProtocolError("message is not an object", INVALID_REQUEST)

        msg_id = obj.get("id")
        # JSON true and false would collide with the integer ids 1 and 0
        if isinstance(msg_id, bool) or not isinstance(msg_id, (str, int, type(None))):
            raise ProtocolError(f"invalid id {msg_id!r}", INVALID_REQUEST)

        method = obj.get("method")
        if method is not None and not isinstance(method, str):
            raise ProtocolError(f"invalid method {method!r}", INVALID_REQUEST)

        params = obj.get("params")
        if params is not None and not isinstance(params, dict):
            raise ProtocolError("params must be an object", INVALID_REQUEST)

        error = None
        if obj.get("error") is not None:
            error = RpcError.from_dict(obj["error"])

        return Message(
            id=msg_id,
            method=method,
            params=params,
            result=obj.get("result"),
            error=error,
            version=obj.get("version", JSONRPC_VERSION),
        )


class Encoding:
    """Serialization and deserialization of messages as newline-delimited JSON."""

    @staticmethod
    def serialize_obj(obj: Any) -> Any:
        """Turn a dataclass into a serialization friendly representation."""
        if is_dataclass(obj) and not isinstance(obj, type):
            return asdict(obj)
        else:
            raise TypeError(f"unserializable object {obj}")

    def encode(self, message: Message) -> bytes:
        """Serialize a message into a single newline terminated frame."""
        data = json.dumps(
            message.to_dict(), default=self.serialize_obj, separators=(",", ":")
        )

        return data.encode() + b"\n"

    @staticmethod
    def decode(frame: bytes) -> Message:
        """Deserialize a single frame (without its newline) into a message."""
        try:
            obj = json.loads(frame.decode())
        except (UnicodeDecodeError, ValueError) as e:
            raise ProtocolError(f"invalid frame: {e}")

        return Message.from_dict(obj)


class FrameDecoder:
    """
    Incremental splitter of a byte stream into messages.

    TCP delivers data in arbitrary chunks, so a frame may be split across multiple
    reads or a single read may contain multiple frames. Every connection has its own
    decoder that buffers incomplete frames.
    """

    def __init__(self, encoding: Optional[Encoding] = None) -> None:
        """Instantiate a decoder with an empty buffer."""
        self._encoding = encoding or Encoding()
        self._buffer = b""

    @property
    def pending(self) -> int:
        """Return the number of buffered bytes that do not form a full frame yet."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[Union[Message, ProtocolError]]:
        """
        Add received data and return all messages completed by it.

        Frames that cannot be decoded are returned as ProtocolError instances in
        their position in the stream, so that the caller can report them without
        losing the messages that follow.
        """
        self._buffer += data

        *frames, self._buffer = self._buffer.split(b"\n")

        messages: List[Union[Message, ProtocolError]] = []

        for frame in frames:
            if len(frame.strip()) == 0:
                continue

            try:
                messages.append(self._encoding.decode(frame))
            except ProtocolError as e:
                messages.append(e)

        return messages
