from fastapi import HTTPException

from paydesk.services.result import Result

ERROR_STATUS = {
    "not_found": 404,
    "forbidden": 403,
    "invalid_action": 409,
    "invalid_reason": 400,
    "invalid_amount": 400,
    "invalid_stage": 409,
    "not_refundable": 409,
    "escalation_failed": 502,
}


def raise_for_result(result: Result) -> None:
    if result.ok:
        return
    raise HTTPException(status_code=ERROR_STATUS.get(result.error_code, 500), detail=result.error)
