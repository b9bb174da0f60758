"""Domain-specific errors for bridgectl.

Every error carries a stable ``code`` (used in structured log events) and a
``recoverable`` flag telling callers whether a later retry or an external state
change can make the same operation succeed.
"""


class BridgectlError(Exception):
    """Base error for bridgectl."""

    code = "C001"
    recoverable = False


class BridgeStateError(BridgectlError):
    """Raised when an operation is invalid for the component's current state."""

    recoverable = True


class ProtocolError(BridgectlError):
    """Base framing error."""


class ParseError(ProtocolError):
    """Raised when a complete frame body is not a valid JSON frame."""

    code = "N001"


class SizeExceeded(ProtocolError):
    """Raised when a frame body is larger than the protocol maximum."""

    code = "N002"


class ExtensionIOError(BridgectlError):
    """Base error for the extension-facing stdio transport."""


class StdinError(ExtensionIOError):
    """Raised when reading from the extension fails."""

    code = "N003"


class StdoutError(ExtensionIOError):
    """Raised when writing to the extension fails."""

    code = "N004"
    recoverable = True


class TransportError(BridgectlError):
    """Base backend transport error."""

    recoverable = True


class TransportConnectError(TransportError):
    """Raised when a backend channel cannot be opened."""

    code = "I001"


class ConnectionLostError(TransportError):
    """Raised when an established backend connection goes away."""

    code = "I002"


class TransportSendError(TransportError):
    """Raised when a frame cannot be written to a backend."""

    code = "I003"


class TransportTimeoutError(TransportError):
    """Raised when a connect or probe does not finish in time."""

    code = "I004"


class RequestTimeoutError(TransportTimeoutError):
    """Raised when a tracked request receives no reply in time."""


class ConfigError(BridgectlError):
    """Base configuration error."""

    recoverable = True


class ConfigValidationError(ConfigError):
    """Raised when a config document does not conform to schema or semantics."""

    code = "R001"


class ConfigLoadError(ConfigError):
    """Raised when the config file cannot be read."""

    code = "R002"


class RoutingError(BridgectlError):
    """Base routing error."""

    recoverable = True


class NoAvailableTargetError(RoutingError):
    """Raised when no backend is reachable under the current config."""

    code = "R020"


class ReconnectFailedError(RoutingError):
    """Raised when the reconnection attempts for one cycle are exhausted."""

    code = "R030"
    recoverable = False
