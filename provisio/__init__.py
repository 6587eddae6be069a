"""
provisio - Idempotent provisioning sequencer.

Runs manifests of named steps in dependency order. Each step is probed
first and only acted on when its effect is absent, so a run can be repeated
safely after a partial failure.
"""

__version__ = "0.1.0"


__all__ = [
    "ProvisioConfig",
    "load_config",
    "get_provisio_home",
    "StepRegistry",
    "IdempotencyProber",
    "Executor",
    "Sequencer",
    "provision",
    "render",
    "exit_code",
]

from .config import ProvisioConfig, load_config, get_provisio_home
from .registry import StepRegistry
from .probes import IdempotencyProber
from .executor import Executor
from .sequencer import Sequencer, provision
from .reporter import render, exit_code
