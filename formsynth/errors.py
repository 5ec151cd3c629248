"""Exception taxonomy for the form synthesis pipeline.

Only whole-document failures propagate to callers. Per-field problems are
logged and skipped by the stage that hits them.
"""


class FormSynthError(Exception):
    """Base class for pipeline errors."""

    pass


class ExtractionError(FormSynthError):
    """The text layer of a document could not be read at all."""

    pass


class DocumentError(FormSynthError):
    """A document could not be opened, saved or written to its destination."""

    pass


class FieldCreationError(FormSynthError):
    """A single field could not be placed on its page."""

    pass
