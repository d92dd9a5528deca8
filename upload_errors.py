"""Error taxonomy of the comprehensive results upload.

``ParseError`` aborts an upload before any session exists. Every other error
here is row-scoped: it is raised inside the per-row loop, caught there, and
stored on the row's analysis so it can be counted and exported.
"""


class UploadError(Exception):
    """Base class for results upload errors."""


class ParseError(UploadError):
    """The uploaded file cannot be read as a results sheet."""


class RowError(UploadError):
    """A problem confined to one data row of the upload."""

    kind = 'row_error'

    def __init__(self, row_number, message, **details):
        super().__init__(message)
        self.row_number = row_number
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'kind': self.kind, 'row_number': self.row_number, 'message': self.message}
        payload.update(self.details)
        return payload


class RowStructuralError(RowError):
    kind = 'structural'


class UnresolvedLocationError(RowError):
    kind = 'unresolved_location'


class UnresolvedStudentError(RowError):
    kind = 'unresolved_student'


class InvalidMarkError(RowError):
    kind = 'invalid_mark'


class NoValidMarksError(RowError):
    kind = 'no_marks'


class RowApplyError(RowError):
    """Writing one row's entities or results failed during confirm."""

    kind = 'apply_failed'


class AmbiguousMatchError(UploadError):
    """More than one existing record matches a normalized name in scope."""
