"""Risk and static-analysis gate exports."""

from shipgate.engine.risk.engine import RiskAssessment, assess_risk
from shipgate.engine.risk.static_analysis import (
    StaticAnalysisRunner,
    StaticAnalysisSummary,
    StaticToolResult,
    ToolStaticAnalysis,
    skipped_static_analysis,
)

__all__ = [
    "RiskAssessment",
    "StaticAnalysisRunner",
    "StaticAnalysisSummary",
    "StaticToolResult",
    "ToolStaticAnalysis",
    "assess_risk",
    "skipped_static_analysis",
]
