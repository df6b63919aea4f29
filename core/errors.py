"""
Session Error Kinds

Every failure the session core can surface is one of these exceptions.

Recoverable:
    - TransientNetworkError: transport failure or timeout; retry or poll later
    - ApiError: the venue answered with a non-zero code

Fatal (process must stop trading):
    - InvariantViolation: local state contradicts itself or the venue
    - UnknownInstrumentError: an instrument was used before registration
    - ConfigurationError: boot could not establish a sane session

Fatal errors raised inside a running session are not propagated through the
WebSocket read loop; they are handed to the venue's fatal channel
(see OkxExchange.report_fatal).
"""


class SessionError(Exception):
    """Base class for all session-core errors"""


class TransientNetworkError(SessionError):
    """REST call did not produce a response"""


class ApiError(SessionError):
    """
    The venue refused a request.

    Attributes:
        code: Venue error code as a string (e.g. "51400")
        message: Venue error message
    """

    def __init__(self, code: str, message: str = ""):
        self.code = str(code)
        self.message = message
        super().__init__(f"code={self.code}, msg={message}")


class SessionFatalError(SessionError):
    """Base class for errors that must stop the venue session"""


class InvariantViolation(SessionFatalError):
    """Local state and venue state disagree in an impossible way"""


class UnknownInstrumentError(SessionFatalError, KeyError):
    """An instrument id was referenced before it was registered"""

    def __init__(self, inst_id: str):
        self.inst_id = inst_id
        super().__init__(f"unknown instrument: {inst_id}")

    def __str__(self) -> str:
        return f"unknown instrument: {self.inst_id}"


class ConfigurationError(SessionFatalError):
    """Boot-time configuration or account state is unusable"""
