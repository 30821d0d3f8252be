from typing import Any, Dict, Optional


class SplitLedgerError(Exception):
    code = "internal_error"
    status = 500

    def __init__(self, message: str = "", code: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code}


class ConfigError(Exception):
    pass


class ValidationError(SplitLedgerError):
    code = "validation_error"
    status = 400

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": str(self)}


class SplitMismatch(ValidationError):
    code = "split_mismatch"


class PercentageMismatch(ValidationError):
    code = "percentage_mismatch"


class EmptySplitSet(ValidationError):
    code = "empty_split_set"


class NegativeAmount(ValidationError):
    code = "negative_amount"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class DuplicateMember(ValidationError):
    code = "duplicate_member"


class InvalidPayload(ValidationError):
    code = "invalid_payload"


class MemberNotFound(SplitLedgerError):
    """An expense or settlement names someone outside the member set."""

    code = "member_not_found"
    status = 500

    def __init__(self, member_id: Any, context: str = "") -> None:
        self.member_id = member_id
        message = f"member {member_id!r} is not part of the member set"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)


class MembershipError(SplitLedgerError):
    code = "membership_error"
    status = 400


class CreatorRemoval(MembershipError):
    code = "cannot_remove_creator"


class NotAMember(MembershipError):
    code = "not_a_member"


class InvalidTransition(SplitLedgerError):
    code = "invalid_status_transition"
    status = 409
