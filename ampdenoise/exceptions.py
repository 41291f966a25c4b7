"""Exception and warning types raised by ampdenoise."""


class AmpdenoiseError(Exception):
    """Base exception for ampdenoise errors."""
    pass


class InputMismatchError(AmpdenoiseError):
    """Forward and reverse reads of a sample disagree in count or order.

    Fatal for the affected sample only; the pipeline skips it and continues.
    """

    def __init__(self, sample, message):
        self.sample = sample
        super().__init__(f"{sample}: {message}" if sample else message)


class MalformedInputError(AmpdenoiseError):
    """The input corpus as a whole is unusable. Fatal for the process."""
    pass


class ConvergenceWarning(UserWarning):
    """An iterative procedure stopped on its iteration or time cap."""
    pass
