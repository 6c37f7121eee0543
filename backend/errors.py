from typing import Optional


class BillSplitError(Exception):
    status_code = 500
    default_detail = "Bill split error"

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotFound(BillSplitError):
    status_code = 404
    default_detail = "Not found"


class InvalidState(BillSplitError):
    status_code = 400
    default_detail = "Operation not allowed in current bill state"


class AlreadyFinalized(InvalidState):
    status_code = 409
    default_detail = "Bill already finalized"


class Unauthorized(BillSplitError):
    status_code = 403
    default_detail = "Unauthorized"


class InvariantViolation(BillSplitError):
    """Raised when stored bill data breaks an invariant the store should enforce."""

    status_code = 500
    default_detail = "Bill invariant violated"
