from backoffice.schemas.common import ErrorOut


_ERROR_EXAMPLES: dict[int, tuple[str, str]] = {
    400: ("validation_error", "Invalid filter tree or payload"),
    401: ("unauthorized", "Unauthorized"),
    403: ("forbidden", "Email domain not allowed"),
    404: ("not_found", "Campaign not found"),
    409: ("invalid_state", "Cannot update campaign in 'active' status"),
    422: ("validation_error", "Validation failed"),
    500: ("internal_error", "Internal server error"),
    502: ("asset_job_error", "Asset generation service unavailable"),
}


def error_responses(*status_codes: int) -> dict[int, dict]:
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message = _ERROR_EXAMPLES.get(status_code, ("http_error", "HTTP error"))
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {
                "application/json": {
                    "example": {
                        "error": {
                            "code": code,
                            "message": message,
                            "request_id": "request-id",
                            "path": "/campaigns/{campaign_id}",
                            "details": None,
                        }
                    }
                }
            },
        }
    return responses
