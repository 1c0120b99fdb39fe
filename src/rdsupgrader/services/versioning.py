"""Minor/major upgrade classification for RDS Upgrader."""

import re
from typing import Iterable, Optional

from packaging import version

from rdsupgrader.errors import PreconditionError
from rdsupgrader.errors_catalog import actionable_error
from rdsupgrader.models import UpgradeScope


class VersionClassifier:
    """Classifies a requested engine version against the running one.

    Versions are compared the way the RDS PostgreSQL X.Y scheme allows: the
    leading component is the family, and the full version is compared as a
    single integer with the dots removed. This is not a semantic-version
    comparison and only orders X.Y strings whose minor segments have the same
    number of digits.
    """

    VERSION_PATTERN = re.compile(r"^\d+(\.\d+)*$")

    def __init__(self, logger):
        self.logger = logger

    def is_valid(self, value: str) -> bool:
        if not self.VERSION_PATTERN.match(value or ""):
            return False
        try:
            version.Version(value)
        except version.InvalidVersion:
            return False
        return True

    def family(self, value: str) -> int:
        return version.Version(value).major

    @staticmethod
    def version_number(value: str) -> int:
        return int(value.replace(".", ""), 10)

    def classify(self, current: str, target: str) -> Optional[UpgradeScope]:
        """Return the upgrade scope, or None when no upgrade is required."""
        current_family = self.family(current)
        target_family = self.family(target)
        self.logger.info(
            "Current version %s (family %s), target version %s (family %s)",
            current,
            current_family,
            target,
            target_family,
        )

        if target_family > current_family:
            return UpgradeScope.MAJOR

        current_number = self.version_number(current)
        target_number = self.version_number(target)
        if current_number == target_number:
            self.logger.info("Current and target versions are the same. Upgrade not required.")
            return None
        if current_number > target_number:
            self.logger.info("Current version is newer than the target. Upgrade not required.")
            return None
        return UpgradeScope.MINOR

    def validate_target(
        self,
        engine: str,
        current: str,
        target: str,
        valid_targets: Iterable[str],
    ):
        targets = list(valid_targets)
        if target in targets:
            return
        raise PreconditionError(
            actionable_error(
                "invalid_upgrade_target",
                engine=engine,
                current_version=current,
                target_version=target,
                valid_targets=", ".join(targets) or "<none advertised>",
            )
        )
