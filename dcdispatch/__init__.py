"""Least-cost DC power flow dispatch with a derivative-free trust-region solver."""
from dcdispatch.core.model_runner import run_dispatch, run_dispatch_from_file, run_dispatch_model

__version__ = "0.1.0"

__all__ = ["run_dispatch", "run_dispatch_model", "run_dispatch_from_file", "__version__"]
