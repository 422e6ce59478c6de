"""Typed errors reported back to the requester of a signaling operation.

Every error carries a stable ``code`` that is put on the wire in the
response frame, so clients can branch on it without parsing messages.
"""

from typing import Optional


class SignalingError(Exception):
    """Base class for errors that are answered with a typed response."""

    code = "signaling_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        """Convert to the error part of a response frame."""
        return {"error": self.code, "message": self.message}


class BadRequestError(SignalingError):
    """Frame could not be parsed or is missing a required field.

    Attributes:
        request_id: Id of the offending request, when the frame carried one.
    """

    code = "bad_request"

    def __init__(self, message: str, request_id=None):
        super().__init__(message)
        self.request_id = request_id


class ProtocolError(SignalingError):
    """Request arrived out of sequence (e.g. produce before transport ready).

    The session is left intact.
    """

    code = "protocol_error"


class CapabilityMismatchError(SignalingError):
    """Consume request is incompatible with the requester's capabilities.

    No state is created.
    """

    code = "capability_mismatch"


class NotFoundError(SignalingError):
    """Reference to an unknown room, peer, transport or unit.

    Usually caused by a race with concurrent teardown and expected under
    concurrency.
    """

    code = "not_found"


class TransportFailure(SignalingError):
    """Underlying media-engine connection failed."""

    code = "transport_failure"


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        BadRequestError,
        ProtocolError,
        CapabilityMismatchError,
        NotFoundError,
        TransportFailure,
    )
}


def error_from_response(code: str, message: str) -> SignalingError:
    """Rebuild a typed error from a response frame (client side)."""
    cls = ERRORS_BY_CODE.get(code, SignalingError)
    if cls is SignalingError:
        return SignalingError(message, code=code)
    return cls(message)
