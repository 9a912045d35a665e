"""Error taxonomy for the proactive check-in engine."""


class KarunaError(Exception):
    """Base class for proactive engine errors."""


class ConfigurationError(KarunaError):
    """A rule or rule file is malformed.

    Raised while loading rules; the offending rule is logged and skipped.
    """

    def __init__(self, message: str, rule_id: str | None = None):
        self.rule_id = rule_id
        super().__init__(message)


class SignalMissingError(KarunaError):
    """A condition references a signal type with no current value.

    Only used inside condition evaluation, where it means "condition false".
    """

    def __init__(self, signal_type: str):
        self.signal_type = signal_type
        super().__init__(f"no current signal of type {signal_type}")


class CompositionTimeoutError(KarunaError):
    """The text-generation collaborator did not answer within its budget."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"message generation exceeded {timeout}s")


class QueueStateError(KarunaError):
    """A check-in operation is not valid for the check-in's current state."""

    def __init__(self, message: str, check_in_id: str | None = None):
        self.check_in_id = check_in_id
        super().__init__(message)


class CheckInNotFoundError(QueueStateError):
    """The check-in id is unknown or no longer pending."""

    def __init__(self, check_in_id: str):
        super().__init__(f"check-in {check_in_id} not found", check_in_id=check_in_id)
