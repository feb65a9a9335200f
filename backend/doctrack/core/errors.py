"""Domain exceptions raised by services and translated to HTTP in main.py"""


class DocTrackError(Exception):
    """Base class for tracking engine errors"""
    status_code = 500
    
    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(DocTrackError):
    """Malformed input, rejected before any mutation"""
    status_code = 400


class OwnershipError(DocTrackError):
    """Cross-tenant access attempt"""
    status_code = 403


class NotFound(DocTrackError):
    """Unknown token or document"""
    status_code = 404


class Gone(DocTrackError):
    """Known token whose distribution is revoked or whose document is deleted"""
    status_code = 410
    
    def __init__(self, message: str = "", reason: str = None):
        super().__init__(message)
        self.reason = reason


class StorageError(DocTrackError):
    """Backing store failure"""
    status_code = 503
