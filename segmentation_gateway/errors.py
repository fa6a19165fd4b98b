"""
errors.py - Exception hierarchy for the segmentation gateway.

Every failure the gateway can report has its own class, grouped by how a
caller should react to it:

    ConfigurationError    bad anonymisation protocol; fix the config
    ArgumentError         programming error at the call site
    ServiceProtocolError  client and service disagree on the contract
    JobNotFoundError      the service no longer knows the job
    PollLimitError        the job outlasted the caller's poll budget
    TransportError        network / HTTP / credential failure

Only transport failures are marked ``retryable``.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for every error raised by segmentation_gateway."""

    retryable = False


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigurationError(GatewayError):
    """The anonymisation protocol could not be built."""


class InvalidMethodError(ConfigurationError):
    def __init__(self, method_name: str):
        self.method_name = method_name
        super().__init__(
            f"Invalid anonymisation method in config: {method_name!r}. "
            'Permitted options are: "Keep", "Hash" and "Random"'
        )


class UnknownFieldError(ConfigurationError, KeyError):
    def __init__(self, keyword: str):
        self.keyword = keyword
        super().__init__(f"Invalid DICOM tag name provided in config: {keyword!r}")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class EmptyPolicyError(ConfigurationError):
    def __init__(self, message: str = "No DICOM tags were parsed - check the anonymisation config."):
        super().__init__(message)


class ConflictingMethodError(ConfigurationError):
    def __init__(self, keyword: str, first: str, second: str):
        self.keyword = keyword
        super().__init__(
            f"Tag {keyword} is listed under both {first} and {second}; "
            "a tag may only have one anonymisation method."
        )


# ---------------------------------------------------------------------------
# Arguments
# ---------------------------------------------------------------------------

class ArgumentError(GatewayError, ValueError):
    """The caller passed something the operation cannot work with."""


class NullInputError(ArgumentError):
    def __init__(self, name: str = "dataset"):
        self.name = name
        super().__init__(f"{name} is None")


class MissingArgumentError(ArgumentError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Required argument {name!r} is missing")


class EmptyChannelError(ArgumentError):
    def __init__(self, channel_ids: list[str]):
        self.channel_ids = channel_ids
        if channel_ids:
            super().__init__(f"No DICOM files in channel(s): {', '.join(channel_ids)}")
        else:
            super().__init__("No channels were supplied")


class EmptyReferenceSetError(ArgumentError):
    def __init__(self):
        super().__init__("At least one reference dataset is required for deanonymisation")


# ---------------------------------------------------------------------------
# Service contract
# ---------------------------------------------------------------------------

class ServiceProtocolError(GatewayError):
    """The service response (or our request) broke the API contract."""


class InvalidRequestError(ServiceProtocolError):
    """The service rejected the submitted batch as malformed (HTTP 400)."""


class UnsupportedPayloadError(ServiceProtocolError):
    def __init__(self, message: str, entry_count: Optional[int] = None):
        self.entry_count = entry_count
        super().__init__(message)

    @classmethod
    def wrong_entry_count(cls, entry_count: int) -> "UnsupportedPayloadError":
        return cls(f"Only 1 file is supported in a result archive, got {entry_count}", entry_count)


class ServiceError(GatewayError):
    """The service failed to accept a submission for a reason other than a bad request."""

    def __init__(self, status_code: int, reason: str):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"Segmentation service error {status_code}: {reason}")


# ---------------------------------------------------------------------------
# Lookup / transport
# ---------------------------------------------------------------------------

class JobNotFoundError(GatewayError, LookupError):
    def __init__(self, segmentation_id: str, model_id: str):
        self.segmentation_id = segmentation_id
        self.model_id = model_id
        super().__init__(f"Segmentation run {segmentation_id} not found for model {model_id}")


class PollLimitError(GatewayError):
    """The job was still in progress when the caller's poll budget ran out."""

    def __init__(self, segmentation_id: str, polls: int):
        self.segmentation_id = segmentation_id
        self.polls = polls
        super().__init__(f"Segmentation {segmentation_id} not complete after {polls} polls")


class TransportError(GatewayError):
    """Network or HTTP level failure; may succeed if tried again later."""

    retryable = True

    def __init__(self, reason: str, status_code: Optional[int] = None):
        self.reason = reason
        self.status_code = status_code
        if status_code is None:
            super().__init__(reason)
        else:
            super().__init__(f"HTTP {status_code}: {reason}")


class InvalidCredentialError(TransportError):
    retryable = False

    def __init__(self, status_code: int = 403):
        super().__init__("Invalid license key", status_code=status_code)
