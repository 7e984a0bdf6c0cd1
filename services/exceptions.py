class ImportValidationError(Exception):
    """Raised when an uploaded CSV cannot be imported (empty file, no rows, wrong kind)."""
    def __init__(self, message):
        super().__init__(message)
        self.message = message


class DataProcessingError(Exception):
    """Raised when something goes wrong in a processing pipeline."""
    def __init__(self, message):
        super().__init__(message)
        self.message = message


class BitrixAPIError(Exception):
    """Raised when the Bitrix24 webhook is unreachable or answers with an error."""
    def __init__(self, message, method=None, status_code=None):
        super().__init__(message)
        self.message = message
        self.method = method
        self.status_code = status_code
