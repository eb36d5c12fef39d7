"""
Command line interface for certsnek.
"""

import os
import sys
import argparse
import logging

from .bot import CertBot
from .challenge import RetryPolicy
from .config import IssuerConfig, load_config, save_config
from .errors import ConfigurationError
from .responder import port_available

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", verbose: bool = False):
    """
    Configure the root logger for a certsnek run.

    With ``verbose`` the certsnek modules and the acme client log at DEBUG,
    which includes every ACME request, regardless of ``level``.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if verbose:
        for name in ("certsnek", "acme.client"):
            logging.getLogger(name).setLevel(logging.DEBUG)


def parse_args(argv=None):
    """
    Parse command line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="certsnek: issue and renew Let's Encrypt certificates over http-01"
    )

    parser.add_argument(
        "domains",
        nargs="*",
        help="Domain names to issue certificates for, one certificate each"
    )

    # Account and storage options
    parser.add_argument(
        "--certs-dir",
        default="certs",
        help="Directory to store keys and certificates (default: certs)"
    )
    parser.add_argument(
        "--email",
        help="Contact email address for the ACME account"
    )
    parser.add_argument(
        "--accept-tos",
        action="store_true",
        help="Accept the terms of service of the certificate authority"
    )

    # Certificate options
    parser.add_argument(
        "--organisation",
        default="",
        help="Organisation name for the certificate signing request"
    )
    parser.add_argument(
        "--passphrase",
        help="Keystore passphrase"
    )
    parser.add_argument(
        "--passphrase-env",
        help="Read the keystore passphrase from this environment variable"
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Request a new certificate even if the current one is still valid"
    )

    # Authority options
    parser.add_argument(
        "--staging",
        action="store_true",
        help="Use Let's Encrypt staging environment (switching authorities re-registers the account)"
    )
    parser.add_argument(
        "--directory-url",
        help="ACME directory URL of another authority"
    )
    parser.add_argument(
        "--http-port",
        type=int,
        default=80,
        help="Port for the http-01 challenge server (default: 80)"
    )

    # Logging options
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Logging level (default: INFO)"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose output for debugging"
    )

    # Configuration file options
    parser.add_argument(
        "--config",
        help="Path to YAML configuration file"
    )
    parser.add_argument(
        "--save-config",
        help="Save configuration to YAML file and exit"
    )

    return parser.parse_args(argv)


def create_config_from_args(args) -> IssuerConfig:
    """
    Create an IssuerConfig object from parsed command line arguments.

    Args:
        args: Parsed command line arguments

    Returns:
        IssuerConfig object
    """
    config = IssuerConfig()

    config.certs_dir = args.certs_dir
    config.email = args.email
    config.accept_tos = args.accept_tos

    config.domains = list(args.domains)
    config.organisation = args.organisation
    config.passphrase = args.passphrase
    config.passphrase_env = args.passphrase_env
    config.force_renew = args.force

    config.staging = args.staging
    config.directory_url = args.directory_url
    config.http_port = args.http_port

    config.log_level = args.log_level

    return config


def run(config: IssuerConfig) -> int:
    """
    Run one issuance pass for every configured domain, one after the other.

    Returns:
        0 if every domain has a valid certificate afterwards, 1 otherwise
    """
    if not config.domains:
        logger.error("No domains given")
        return 1

    passphrase = config.resolve_passphrase()

    if not port_available(config.http_port):
        logger.warning(
            f"Port {config.http_port} is already in use - the http-01 challenge server will not be able to start"
        )

    policy = RetryPolicy(max_attempts=config.max_attempts, interval=config.retry_interval)
    bot = CertBot(
        os.path.abspath(config.certs_dir),
        contact_email=config.email,
        policy=policy,
        http_port=config.http_port,
        directory_url=config.directory_url,
        renew_before_days=config.renew_before_days,
    )

    failed = 0
    for domain in config.domains:
        result = bot.issue_or_renew(
            domain,
            agreement_accepted=config.accept_tos,
            organisation=config.organisation,
            passphrase=passphrase,
            force_renew=config.force_renew,
            use_staging=config.staging,
        )
        if result.ok:
            logger.info(f"{domain}: {result.status.value} ({result.keystore_path})")
        else:
            failed += 1
            logger.error(f"{domain}: {result.error.kind.value} error: {result.error}")

    return 1 if failed else 0


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    # Load configuration from file if provided
    if args.config:
        try:
            config = load_config(args.config)
        except ConfigurationError as e:
            print(f"Error loading configuration file: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        config = create_config_from_args(args)

    setup_logging(config.log_level, args.verbose)

    if args.save_config:
        try:
            save_config(config, args.save_config)
            print(f"Configuration saved to {args.save_config}")
            sys.exit(0)
        except OSError as e:
            print(f"Error saving configuration: {e}", file=sys.stderr)
            sys.exit(1)

    try:
        sys.exit(run(config))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("Interrupted.")
        sys.exit(1)


if __name__ == "__main__":
    main()
