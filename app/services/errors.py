class StorageError(Exception):
    """Base class for every failure the storage core reports to its callers."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidPath(StorageError):
    status_code = 400


class UnsupportedMediaType(StorageError):
    status_code = 415


class ContentTooLarge(StorageError):
    status_code = 413


class StorageWriteError(StorageError):
    pass


class StorageDeleteError(StorageError):
    pass


class IndexWriteError(StorageError):
    pass


class IndexReadError(StorageError):
    pass


class DuplicateToken(IndexWriteError):
    pass


class NotFound(StorageError):
    status_code = 404


class DirectoryNotFound(NotFound):
    pass


class Forbidden(StorageError):
    status_code = 403

