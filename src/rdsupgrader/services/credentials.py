"""Database credential resolution through Secrets Manager."""

import json
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from rdsupgrader.errors import ProviderCallError
from rdsupgrader.models import CredentialBundle, TargetInstance


class CredentialService:
    """Resolves the database login for an instance on every call.

    The secret id comes from an instance tag, falling back to the RDS managed
    master user secret. Nothing is cached so rotated secrets are picked up.
    """

    def __init__(self, rds_api, secrets_client, logger, secret_tag_key: str):
        self.rds_api = rds_api
        self.secrets_client = secrets_client
        self.logger = logger
        self.secret_tag_key = secret_tag_key

    def secret_reference(self, instance: TargetInstance) -> Optional[str]:
        tags = self.rds_api.list_tags(instance.arn) if instance.arn else {}
        reference = tags.get(self.secret_tag_key) or instance.master_secret_arn
        self.logger.debug("Secret reference for %s: %s", instance.identifier, reference)
        return reference or None

    def resolve(self, instance: TargetInstance) -> Optional[CredentialBundle]:
        try:
            reference = self.secret_reference(instance)
        except ProviderCallError as exc:
            self.logger.warning("Could not read tags for %s: %s", instance.identifier, exc)
            return None

        if not reference:
            self.logger.warning("No secret is attached to %s.", instance.identifier)
            return None

        try:
            response = self.secrets_client.get_secret_value(SecretId=reference)
        except (ClientError, BotoCoreError) as exc:
            self.logger.warning("Could not read secret for %s: %s", instance.identifier, exc)
            return None

        try:
            secret = json.loads(response.get("SecretString") or "{}")
        except json.JSONDecodeError:
            self.logger.warning("Secret for %s is not a JSON document.", instance.identifier)
            return None

        username = secret.get("username") or instance.master_username
        password = secret.get("password")
        if not username or not password:
            self.logger.warning("Secret for %s has no username/password.", instance.identifier)
            return None

        return CredentialBundle(username=username, password=password)
