"""Exceptions raised by the active registration model metric."""


class ConfigurationError(ValueError):
    """The metric cannot be evaluated with its current setup.

    Raised for missing collaborators, a level without a model, a model whose
    representer count does not match its sampling domain, or a sampler that
    cannot produce any points. Registration must not proceed.
    """


class InsufficientSamplesError(RuntimeError):
    """Too few samples mapped inside the moving image for a meaningful measure.

    Recoverable: the metric catches it and returns its degraded measure.
    """

    def __init__(self, number_of_valid_samples: int, number_of_requested_samples: int):
        self.number_of_valid_samples = number_of_valid_samples
        self.number_of_requested_samples = number_of_requested_samples
        super().__init__(
            f"Too many samples map outside moving image buffer: "
            f"{number_of_valid_samples} / {number_of_requested_samples}"
        )
