"""Exceptions raised by the settlement collaborators (store, spreadsheets, CLI).

The reconciliation engine itself never raises for bad business data.
"""


class SettlementError(Exception):
    """Base class for settlement tooling errors."""


class UploadNotFoundError(SettlementError):
    def __init__(self, upload_id: str):
        super().__init__(f"No settlement rows found for upload '{upload_id}'")
        self.upload_id = upload_id


class DuplicateUploadError(SettlementError):
    def __init__(self, original_name: str, marketplace: str):
        super().__init__(
            f"'{original_name}' was already uploaded for {marketplace}. Delete it before uploading again."
        )
        self.original_name = original_name
        self.marketplace = marketplace


class UnsupportedFileError(SettlementError):
    def __init__(self, path):
        super().__init__(f"Unsupported file format: {path}")
        self.path = path
