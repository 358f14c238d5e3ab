from starlette.status import HTTP_400_BAD_REQUEST


class ApiError(Exception):
    """An error the caller can correct, rendered as {"error", "code"}."""

    def __init__(self, message: str, code: str,
                 status_code: int = HTTP_400_BAD_REQUEST):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def to_dict(self):
        return {'error': self.message, 'code': self.code}
