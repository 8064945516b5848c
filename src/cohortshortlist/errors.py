"""Exception hierarchy for the shortlisting engine."""

from __future__ import annotations


class ShortlistingError(Exception):
    """Base class for engine errors."""


class ConfigurationError(ShortlistingError):
    """Raised when required configuration is missing or invalid."""


class CohortValidationError(ShortlistingError):
    """A cohort cannot be evaluated; the cohort is skipped."""

    reason = "invalid_configuration"

    def __init__(self, cohort_id: str, message: str, *, form_id: str | None = None):
        super().__init__(message)
        self.cohort_id = cohort_id
        self.form_id = form_id


class NoActiveFormError(CohortValidationError):
    reason = "no_active_form"


class MissingRuleTreeError(CohortValidationError):
    reason = "no_rule_tree"


class RuleTreeError(CohortValidationError):
    reason = "malformed_rule_tree"


class UndefinedFieldReferenceError(CohortValidationError):
    reason = "undefined_field_reference"

    def __init__(self, cohort_id: str, form_id: str, field_ids: list[str]):
        super().__init__(
            cohort_id,
            f"Form {form_id} rules reference fields missing from its schema: {', '.join(field_ids)}",
            form_id=form_id,
        )
        self.field_ids = field_ids


class MemberVanishedError(ShortlistingError):
    """Raised when a status write affects no rows."""

    def __init__(self, membership_id: str):
        super().__init__(f"Cohort member {membership_id} was not updated (missing or already processed)")
        self.membership_id = membership_id


class NotificationDeliveryError(ShortlistingError):
    """Raised when the notification service reports delivery errors."""

    def __init__(self, errors: list):
        super().__init__(f"Notification delivery failed: {errors}")
        self.errors = errors
