"""
RDS Upgrader - minor and major version upgrades for Amazon RDS PostgreSQL
"""

__version__ = "0.1.0"

from .core import RdsUpgrader
from .errors import UpgraderError

__all__ = ["RdsUpgrader", "UpgraderError"]
