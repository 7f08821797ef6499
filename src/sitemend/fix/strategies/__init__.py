"""Built-in fix strategies."""

from sitemend.fix.strategy import FixStrategy
from sitemend.fix.strategies.configuration import ConfigurationFixStrategy
from sitemend.fix.strategies.file_permissions import FilePermissionsFixStrategy
from sitemend.fix.strategies.code_remediation import CodeRemediationFixStrategy
from sitemend.fix.strategies.core_update import CoreUpdateFixStrategy

ALL_STRATEGIES: list[type[FixStrategy]] = [
    ConfigurationFixStrategy,
    CoreUpdateFixStrategy,
    FilePermissionsFixStrategy,
    CodeRemediationFixStrategy,
]

__all__ = [
    "ALL_STRATEGIES",
    "CodeRemediationFixStrategy",
    "ConfigurationFixStrategy",
    "CoreUpdateFixStrategy",
    "FilePermissionsFixStrategy",
]
