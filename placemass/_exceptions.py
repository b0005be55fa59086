"""
_exceptions.py
==============
Exception hierarchy for placemass.

Fatal, run-aborting conditions have their own classes so callers can tell a
bad input batch apart from ordinary numeric or programming errors.  All of
them also derive from ``ValueError`` so that generic input-validation
handlers keep working.
"""


class PlacemassError(Exception):
    """Base for all placemass domain errors."""


class EmptyInputError(PlacemassError, ValueError):
    """An aggregation was started without any input samples."""


class SampleReadError(PlacemassError, ValueError):
    """A sample file is unreadable or not valid jplace."""


class TreeIncompatibilityError(PlacemassError, ValueError):
    """
    Two samples of one run do not share the same reference tree.

    Raised both for topology mismatches and for mass vectors whose length
    differs from the ones seen before.

    Attributes
    ----------
    source : str or None
        Display path of the sample that failed the check.
    """

    def __init__(self, message: str, source=None) -> None:
        super().__init__(message)
        self.source = source
