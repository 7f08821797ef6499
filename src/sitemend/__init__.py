"""sitemend: automated remediation of web site vulnerabilities."""

from sitemend._version import __version__
from sitemend.core.models import BatchReport, FixRecord, Vulnerability
from sitemend.fix.engine import FixEngine
from sitemend.scoring.severity import calculate_composite_risk, calculate_severity

__all__ = [
    "__version__",
    "BatchReport",
    "FixEngine",
    "FixRecord",
    "Vulnerability",
    "calculate_composite_risk",
    "calculate_severity",
]
