"""
Error kinds raised while calling HMRs.

Callers can tell bad input (fix the file and rerun) from exhausted
memory (fatal) and from numerical trouble inside EM.
"""


class HMRError(Exception):
    """Base class for all errors raised by hypometh_hmm."""


class InputFormatError(HMRError, ValueError):
    """Input sites are malformed or not sorted."""

    def __init__(self, message: str, filepath: str = ""):
        self.filepath = filepath
        if filepath:
            message = f'{message} in file "{filepath}"'
        super().__init__(message)


class ResourceExhaustedError(HMRError, MemoryError):
    """Genome-scale arrays could not be allocated."""


class NumericalInstabilityError(HMRError, ArithmeticError):
    """Likelihood became non-finite or a shape parameter fit failed."""
