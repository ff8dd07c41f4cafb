"""Exceptions raised by the C-scan inspection engine.

Every error is terminal for the current run: nothing is retried, and the
pipeline service reports it as a single ERROR message while leaving the
previously committed result untouched.
"""


class CScanError(Exception):
    """Base exception for all C-scan processing errors."""
    pass


class UnreadableWorkbook(CScanError):
    """Raised when an upload is not an .xlsx workbook openpyxl can open."""
    pass


class NoSheetFound(CScanError):
    """Raised when the uploaded workbook has no worksheet to read."""
    pass


class HeaderNotFound(CScanError):
    """Raised when no coordinate header row is found in the scan window."""
    pass


class NoDataExtracted(CScanError):
    """Raised when a header was found but no measurement points came out."""
    pass


class DimensionMismatch(CScanError):
    """Raised when a merge produces buffers of inconsistent shape."""
    pass


class InvalidNominalThickness(CScanError, ValueError):
    """Raised when nominal thickness is zero, negative, or undetectable."""
    pass
