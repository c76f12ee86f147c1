"""Error taxonomy and input validation for the tutoring engines."""

from typing import Any, Iterable, Optional


class TutoringError(Exception):
    """Base class for every error the engines raise on purpose."""

    status_code = 500
    public_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class ValidationError(TutoringError):
    """Required input missing or malformed; nothing was written."""

    status_code = 400


class NotFound(TutoringError):
    status_code = 404


class DuplicateConversation(TutoringError):
    """A conversation already exists for (session, student, topic).

    Not a failure: callers hand the existing id back to the student.
    """

    status_code = 200

    def __init__(self, conversation_id: str):
        super().__init__("Conversation already exists for this topic")
        self.conversation_id = conversation_id


class DuplicateTopic(TutoringError):
    status_code = 409

    def __init__(self, session_id: str, topic: str):
        super().__init__(f"Topic '{topic}' already exists for this session")
        self.session_id = session_id
        self.topic = topic


class ConversationBlocked(TutoringError):
    status_code = 403
    public_message = (
        "You have been removed from this conversation. "
        "Please ask your teacher for permission to rejoin."
    )

    def __init__(self, conversation_id: str, reason: Optional[str]):
        super().__init__(self.public_message)
        self.conversation_id = conversation_id
        self.reason = reason or "Removed for off-topic discussion"


class ConversationCompleted(TutoringError):
    status_code = 409

    def __init__(self, conversation_id: str):
        super().__init__("This conversation is complete. Great work explaining the topic!")
        self.conversation_id = conversation_id


class NotYourTurn(TutoringError):
    """A collaborator spoke while another participant holds the turn."""

    status_code = 403

    def __init__(self, collab_session_id: str, current_turn_student_id: Optional[str]):
        super().__init__("Not your turn")
        self.collab_session_id = collab_session_id
        self.current_turn_student_id = current_turn_student_id


class GenerationFailed(TutoringError):
    """The language model call failed or returned nothing usable.

    ``detail`` is for logs only; students see ``public_message``.
    """

    status_code = 502
    public_message = "The tutor could not respond right now. Please try again."

    def __init__(self, detail: str = ""):
        super().__init__(self.public_message)
        self.detail = detail


class SummarizationFailed(TutoringError):
    pass


class StaleConversation(TutoringError):
    """A conditional update lost against a concurrent writer."""

    status_code = 409
    public_message = "This conversation changed while your message was processed. Please try again."

    def __init__(self, conversation_id: str):
        super().__init__(self.public_message)
        self.conversation_id = conversation_id


class SessionUnavailable(TutoringError):
    status_code = 403

    def __init__(self, code: str, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.status = status


def require_text(value: Any, field: str) -> str:
    """Return ``value`` stripped, or raise when it is empty."""
    text = "" if value is None else str(value).strip()
    if not text:
        raise ValidationError(f"{field} is required")
    return text


def require_ids(**values: Any) -> None:
    missing = [name for name, value in values.items() if value is None or not str(value).strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def require_choice(value: str, field: str, choices: Iterable[str]) -> str:
    allowed = tuple(choices)
    if value not in allowed:
        raise ValidationError(f"{field} must be one of: {', '.join(allowed)}")
    return value
