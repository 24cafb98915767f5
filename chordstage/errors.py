"""Error types raised at the live-session seams.

Pure components (classifier, transposer, renderer) never raise these; they
degrade to empty or unchanged results instead. Transport and data-provider
errors surface as these exceptions and are turned into warnings by the
session, which keeps running.
"""


class ChordStageError(Exception):
    """Base class for every error raised by chordstage."""


class DataNotFound(ChordStageError):
    """A song, setlist or section is absent from the data provider."""


class TransportUnavailable(ChordStageError):
    """The messaging service or local discovery could not be reached."""


class StaleReference(ChordStageError):
    """A delta references an arrangement or section not loaded yet."""


class AbortedLoad(ChordStageError):
    """A data load was superseded by a newer navigation."""


class TransposeParseFailure(ChordStageError):
    """A chord-grid payload could not be parsed for transposition."""
