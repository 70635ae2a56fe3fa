"""
Typed failures raised by the lifecycle engine.

Every failure derives from LimsError and carries:
- type:        error category (not_found / validation_error / conflict / unavailable)
- code:        machine readable code (ORDER_NOT_FOUND, NOT_REVIEWED, ...)
- message:     human readable description
- detail:      structured context, at least entity kind and id where known
- http_status: status code the API answers with

Handlers only raise; the API exception handler renders the body.
"""


class LimsError(Exception):
    """Base class for all engine failures."""

    type = "error"
    code = "UNKNOWN_ERROR"
    http_status = 500

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail or {}
        super().__init__(message)

    def to_dict(self):
        return {
            "type": self.type,
            "code": self.code,
            "message": self.message,
            "detail": self.detail,
        }


class NotFound(LimsError):
    type = "not_found"
    code = "NOT_FOUND"
    http_status = 404

    entity = "entity"

    def __init__(self, entity_id, message=None, **detail):
        self.entity_id = entity_id
        super().__init__(
            message or f"{self.entity} {entity_id} not found",
            detail={"entity": self.entity, "id": entity_id, **detail},
        )


class OrderNotFound(NotFound):
    code = "ORDER_NOT_FOUND"
    entity = "order"


class ResultNotFound(NotFound):
    code = "RESULT_NOT_FOUND"
    entity = "result"


class AccessionNotFound(NotFound):
    code = "ACCESSION_NOT_FOUND"
    entity = "accession"


class PatientNotFound(NotFound):
    code = "PATIENT_NOT_FOUND"
    entity = "patient"


class SpecimenNotFound(NotFound):
    code = "SPECIMEN_NOT_FOUND"
    entity = "specimen"


class TestNotFound(NotFound):
    __test__ = False
    code = "TEST_NOT_FOUND"
    entity = "test"


class TestNotInOrder(NotFound):
    __test__ = False
    code = "TEST_NOT_IN_ORDER"
    entity = "test"

    def __init__(self, test_id, order_number):
        super().__init__(
            test_id,
            message=f"test {test_id} is not part of order {order_number}",
            order=order_number,
        )


class InvalidTestReference(LimsError):
    """One or more submitted test ids resolve in neither catalog."""

    type = "validation_error"
    code = "INVALID_TEST_REFERENCE"
    http_status = 400

    def __init__(self, test_ids):
        self.test_ids = list(test_ids)
        super().__init__(
            f"unknown test reference(s): {', '.join(self.test_ids)}",
            detail={"entity": "test", "ids": self.test_ids, "field": "tests"},
        )


class InvalidTransition(LimsError):
    type = "conflict"
    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, message, entity=None, entity_id=None, **detail):
        super().__init__(
            message,
            detail={"entity": entity, "id": entity_id, **detail},
        )


class AlreadyAccessioned(InvalidTransition):
    code = "ALREADY_ACCESSIONED"


class NotReviewed(InvalidTransition):
    code = "NOT_REVIEWED"


class NotApproved(InvalidTransition):
    code = "NOT_APPROVED"


class ConcurrentModification(LimsError):
    """A write lost a race against another transaction."""

    type = "conflict"
    code = "CONCURRENT_MODIFICATION"
    http_status = 409


class ValidationError(LimsError):
    type = "validation_error"
    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message, field=None, entity=None, entity_id=None):
        self.field = field
        detail = {"field": field}
        if entity is not None:
            detail.update(entity=entity, id=entity_id)
        super().__init__(message, detail=detail)


class StoreUnavailable(LimsError):
    type = "unavailable"
    code = "STORE_UNAVAILABLE"
    http_status = 503
