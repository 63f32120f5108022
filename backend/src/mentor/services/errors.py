"""Domain errors raised by the assessment lifecycle."""


class AssessmentError(Exception):
    """Base class. ``retryable`` tells callers whether repeating the request may succeed."""

    retryable = False


class NotFoundError(AssessmentError):
    pass


class OwnershipError(AssessmentError):
    """The target does not belong to the requesting learner. Raised before any mutation."""


class ConflictError(AssessmentError):
    """An in-progress assessment already exists for this learner and course."""

    def __init__(self, existing_assessment_id: str):
        super().__init__(
            f"Assessment {existing_assessment_id} is already in progress for this course"
        )
        self.existing_assessment_id = existing_assessment_id


class GenerationFailed(AssessmentError):
    retryable = True


class GradingDegraded(AssessmentError):
    """Judge output was unusable. Always recovered by deterministic grading."""

    retryable = True


class PersistenceError(AssessmentError):
    retryable = True

    def __init__(self, item_id: str, message: str):
        super().__init__(f"Failed to persist item {item_id}: {message}")
        self.item_id = item_id
