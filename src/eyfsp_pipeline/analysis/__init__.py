"""Per-pupil analysis table read by the regression stage"""

from .merge import AnalysisConfig, build_analysis_table

__all__ = ["AnalysisConfig", "build_analysis_table"]
