"""
Error and warning types shared across hemolib.

Invalid input raises one of the exceptions below (all of them are also
ValueError/RuntimeError subclasses so callers catching the builtin types keep
working). Conditions that are reportable but not fatal are signalled with
``warnings.warn(..., DataWarning)``, or ``FitWarning`` for model fitting.
"""


class HemolibError(Exception):
    """Base class for all hemolib errors"""


class ValidationError(HemolibError, ValueError):
    """Malformed additive model specification (missing variable, wrong knot arity)"""


class DataError(HemolibError, ValueError):
    """Input waveform or event stream that cannot be processed"""


class FitError(HemolibError, RuntimeError):
    """Regression engine failed to converge or hit a singular system"""


class PredictionError(HemolibError, ValueError):
    """Prediction data lacks a covariate required by the fitted model"""


class DataWarning(UserWarning):
    """Reportable, non-fatal data condition (short waveform, rows dropped, ...)"""


class FitWarning(UserWarning):
    """Fit that finished but stopped early, or a pipeline step that failed"""
