"""
Exception Classes - Strongly typed exception hierarchy.

Insufficient credits on the chat path is a structured denial, not an
exception. These are raised where a caller asked for something explicit.
"""

from uuid import UUID


class MeteringError(Exception):
    """Base exception for all metering errors."""

    pass


class InsufficientCreditsError(MeteringError):
    """Raised when the wallet cannot fund the requested operation."""

    def __init__(self, credits: int, required: int) -> None:
        self.credits = credits
        self.required = required
        super().__init__(f"Insufficient credits. Credits: {credits}, Required: {required}")


class UserNotFoundError(MeteringError):
    """Raised when the referenced user doesn't exist."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class AdvisorNotFoundError(MeteringError):
    """Raised when the referenced advisor doesn't exist."""

    def __init__(self, advisor_id: UUID) -> None:
        self.advisor_id = advisor_id
        super().__init__(f"Advisor not found: {advisor_id}")


class SessionNotFoundError(MeteringError):
    """Raised when no live session exists for a user/advisor pair."""

    def __init__(self, user_id: UUID, advisor_id: UUID) -> None:
        self.user_id = user_id
        self.advisor_id = advisor_id
        super().__init__(f"No active session for user {user_id} with advisor {advisor_id}")


class FreeTrialAlreadyUsedError(MeteringError):
    """Raised when a free session is requested after the one-time trial was used."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__("Free minute already used")


class FreeTrialActiveError(MeteringError):
    """Raised when a paid window is requested while the free trial is still running."""

    def __init__(self, user_id: UUID, remaining_seconds: int) -> None:
        self.user_id = user_id
        self.remaining_seconds = remaining_seconds
        super().__init__(f"Free session still active ({remaining_seconds}s remaining)")


class PaidSessionConflictError(MeteringError):
    """Raised when the user already has an open paid window with another advisor."""

    def __init__(self, active_advisor_id: UUID) -> None:
        self.active_advisor_id = active_advisor_id
        super().__init__(
            f"End your current paid session with advisor {active_advisor_id} first"
        )


class ReplyGenerationError(MeteringError):
    """Raised when the completion API fails or times out."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Reply generation failed: {message}")


class AuthenticationError(MeteringError):
    """Raised when authentication fails (invalid token or API key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class DataIntegrityError(MeteringError):
    """Raised when a metering invariant is violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")
