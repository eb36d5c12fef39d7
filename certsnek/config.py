"""
Configuration handling for certsnek.
"""

import os
import yaml
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import ConfigurationError

# Let's Encrypt directory URLs, used unless directory_url is set
LETSENCRYPT_DIRECTORY_URL = 'https://acme-v02.api.letsencrypt.org/directory'
LETSENCRYPT_STAGING_DIRECTORY_URL = 'https://acme-staging-v02.api.letsencrypt.org/directory'


@dataclass
class IssuerConfig:
    """Configuration for one certsnek run."""

    # Storage
    certs_dir: str = "certs"

    # Account
    email: Optional[str] = None
    accept_tos: bool = False

    # Domains and certificate subject
    domains: List[str] = field(default_factory=list)
    organisation: str = ""

    # Keystore passphrase, given directly or through an environment variable
    passphrase: Optional[str] = None
    passphrase_env: Optional[str] = None

    # Authority
    staging: bool = False
    directory_url: Optional[str] = None

    # Renewal
    force_renew: bool = False
    renew_before_days: int = 30

    # Validation and download polling
    http_port: int = 80
    max_attempts: int = 20
    retry_interval: float = 3.0

    # Logging
    log_level: str = "INFO"

    def resolve_passphrase(self) -> str:
        """
        Return the keystore passphrase.

        Raises:
            ConfigurationError: passphrase_env names a variable that is not set
        """
        if self.passphrase_env:
            value = os.environ.get(self.passphrase_env)
            if value is None:
                raise ConfigurationError(f"Environment variable {self.passphrase_env} is not set")
            return value
        return self.passphrase or ""


def load_config(config_path: str) -> IssuerConfig:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        IssuerConfig object with values from the YAML file
    """
    if not os.path.exists(config_path):
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        try:
            config_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}", str(e)) from e

    if not isinstance(config_data, dict):
        raise ConfigurationError("Invalid configuration format. Expected a YAML dictionary.")

    try:
        return IssuerConfig(**config_data)
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration in {config_path}", str(e)) from e


def save_config(config: IssuerConfig, config_path: str):
    """
    Save configuration to a YAML file.

    The passphrase itself is never written; use passphrase_env instead.

    Args:
        config: IssuerConfig object to save
        config_path: Path to save the YAML configuration
    """
    config_dict = {
        key: getattr(config, key)
        for key in config.__dataclass_fields__
        if getattr(config, key) is not None and key != "passphrase"
    }

    os.makedirs(os.path.dirname(os.path.abspath(config_path)), exist_ok=True)

    with open(config_path, 'w') as f:
        yaml.dump(config_dict, f, default_flow_style=False)
