"""
EYFSP Latent Traits Pipeline

Cleans Early Years Foundation Stage Profile and school census records,
derives cognitive and socio-emotional factor scores from binary EYFSP
items, and assembles the per-pupil analysis table.
"""

__version__ = "0.1.0"
__project__ = "Socio-emotional characteristics in early childhood and offending in adolescence"

from .recovery.item_recovery import recover_assessment
from .longitudinal.aggregator import build_panel
from .factors.esem import run_esem
from .analysis.merge import build_analysis_table

__all__ = [
    "recover_assessment",
    "build_panel",
    "run_esem",
    "build_analysis_table",
]
