from retail_erp.schemas.common import ErrorOut


_ERROR_EXAMPLES: dict[int, tuple[str, str]] = {
    400: ("bad_request", "Bad request"),
    404: ("not_found", "Resource not found"),
    409: ("order_not_confirmable", "Order is not pending"),
    422: ("insufficient_stock", "Insufficient stock. Requested: 15, available: 5"),
    500: ("internal_error", "Internal server error"),
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
                            "path": "/example",
                            "details": None,
                        }
                    }
                }
            },
        }
    return responses
