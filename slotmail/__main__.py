"""
slotmail Entry Point

Usage:
    python -m slotmail init KEY              # Create account, publish mailsite
    python -m slotmail run                   # Run the contact driver
    python -m slotmail send CONTACT FILE     # Queue a message
    python -m slotmail status                # Show contacts and queues
    python -m slotmail reset CONTACT         # Clear a contact's attention mark
    python -m slotmail config --show         # Show current config
"""

import argparse
import sys
import time
import logging
from pathlib import Path

from . import __version__


def setup_logging(level: str, log_file: str | None = None):
    """Configure logging for the application."""
    log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    handlers = [logging.StreamHandler()]

    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=log_format,
        handlers=handlers
    )


def build_client(config):
    """Create the storage client selected in the [network] section."""
    from .network import LoopbackStorage, SpoolStorage

    if config.network.backend == "loopback":
        return LoopbackStorage()
    return SpoolStorage(Path(config.network.spool_path).expanduser())


def cmd_init(args, config) -> int:
    from .core.account import Account
    from .core.mailsite import publish_mailsite

    data_dir = Path(config.account.data_dir).expanduser()
    key_path = Path(config.account.private_key_file)
    if not key_path.is_absolute():
        key_path = data_dir / key_path
    if key_path.exists() and not args.force:
        print(f"Account key {key_path} already exists (use --force to replace it)")
        return 1

    try:
        account = Account.create(data_dir, args.mailsite_key, key_file=str(key_path), key_size=args.key_size)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    config.account.mailsite_key = account.mailsite_key
    config.account.rtsksk = account.rtsksk
    config.save(args.config)
    print(f"Account {account.mailsite_key} created, configuration written to {args.config}")

    if not publish_mailsite(build_client(config), account):
        print("Warning: mailsite could not be published yet, run 'slotmail init --publish' later")
    return 0


def cmd_publish(args, config) -> int:
    from .core.account import Account
    from .core.mailsite import publish_mailsite

    account = Account.load(config.account)
    return 0 if publish_mailsite(build_client(config), account) else 1


def cmd_send(args, config) -> int:
    from .core.account import Account
    from .core.driver import ContactDriver

    if args.file == "-":
        body = sys.stdin.buffer.read()
    else:
        body = Path(args.file).read_bytes()

    account = Account.load(config.account)
    driver = ContactDriver(account, build_client(config), policy=_policy(config))

    try:
        contact = driver.outbound_contact(args.contact)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    if not contact.send_message(body):
        print("Failed to queue message")
        return 1
    print(f"Message queued for {args.contact}")
    return 0


def cmd_status(args, config) -> int:
    from .core.account import Account
    from .core.driver import ContactDriver
    from .utils.formatting import format_duration, format_timestamp, truncate

    account = Account.load(config.account)
    driver = ContactDriver(account, build_client(config), policy=_policy(config))
    now_ms = int(time.time() * 1000)

    print(f"Account: {account.mailsite_key}")
    print("")
    print("Outbound contacts:")
    for key in driver.outbound_keys():
        contact = driver.outbound_contact(key)
        state = contact.state
        pending = contact.pending()
        print(f"  {truncate(key, 40)}  {state.status.value}  RTS: {format_timestamp(state.rts_sent_at)}  queued: {len(pending)}")
        if state.attention:
            print(f"    NEEDS ATTENTION: {state.attention}")
        for msg in pending:
            if msg.first_send_time:
                age = format_duration(now_ms - msg.first_send_time)
                print(f"    #{msg.uid} sent {age} ago")
            else:
                print(f"    #{msg.uid} not sent yet")

    print("")
    print("Inbound contacts:")
    for key in driver.inbound_keys():
        state = driver.inbound_contact(key).store.load()
        print(f"  {truncate(key, 40)}  slot: {truncate(state.slots or '-', 16)}")
    return 0


def cmd_reset(args, config) -> int:
    from .core.account import Account
    from .core.driver import ContactDriver

    account = Account.load(config.account)
    driver = ContactDriver(account, build_client(config), policy=_policy(config))

    if args.contact not in driver.outbound_keys():
        print(f"No outbound contact {args.contact}")
        return 1

    if not driver.outbound_contact(args.contact).clear_attention():
        print(f"Could not clear attention mark on {args.contact}")
        return 1
    print(f"Cleared attention mark on {args.contact}")
    return 0


def cmd_config(args, config) -> int:
    if args.validate:
        errors = config.validate()
        if errors:
            for error in errors:
                print(f"  - {error}")
            return 1
        print("Configuration is valid")
        return 0

    import toml
    print(toml.dumps(config._to_dict()))
    return 0


def _policy(config):
    from .protocol.policy import RetryPolicy
    return RetryPolicy.from_config(config.protocol)


def main():
    """Main entry point for slotmail."""
    parser = argparse.ArgumentParser(
        prog="slotmail",
        description="slotmail - Store-and-forward mail over a distributed key space"
    )
    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"slotmail {__version__}"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=Path("slotmail.toml"),
        help="Path to configuration file (default: slotmail.toml)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: from config, else INFO)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    init_parser = subparsers.add_parser("init", help="Create the account and publish its mailsite")
    init_parser.add_argument("mailsite_key", nargs="?", help="Mailsite key body for the new account")
    init_parser.add_argument("--key-size", type=int, default=2048, help="RSA key size (default: 2048)")
    init_parser.add_argument("--force", action="store_true", help="Replace an existing account key")
    init_parser.add_argument("--publish", action="store_true", help="Only republish the mailsite")

    subparsers.add_parser("run", help="Run the contact driver")

    send_parser = subparsers.add_parser("send", help="Queue a message for a contact")
    send_parser.add_argument("contact", help="Mailsite key body of the recipient")
    send_parser.add_argument("file", help="Message file ('-' for stdin)")

    subparsers.add_parser("status", help="Show contacts and queued messages")

    reset_parser = subparsers.add_parser("reset", help="Clear a contact's attention mark")
    reset_parser.add_argument("contact", help="Mailsite key body of the contact")

    config_parser = subparsers.add_parser("config", help="Configuration")
    config_parser.add_argument("--show", action="store_true", help="Show current config")
    config_parser.add_argument("--validate", action="store_true", help="Validate config")

    args = parser.parse_args()

    from .config import load_config
    config = load_config(args.config)

    setup_logging(args.log_level or config.logging.level, config.logging.file or None)
    logger = logging.getLogger("slotmail")

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "config":
        sys.exit(cmd_config(args, config))

    if args.command == "init":
        if args.publish:
            sys.exit(cmd_publish(args, config))
        if not args.mailsite_key:
            parser.error("init requires a mailsite key")
        sys.exit(cmd_init(args, config))

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config: {error}")
        sys.exit(1)

    commands = {
        "send": cmd_send,
        "status": cmd_status,
        "reset": cmd_reset,
    }
    if args.command in commands:
        try:
            sys.exit(commands[args.command](args, config))
        except OSError as e:
            logger.error(f"{e}")
            sys.exit(1)

    # run
    from .core.account import Account
    from .core.driver import ContactDriver

    try:
        account = Account.load(config.account)
        driver = ContactDriver(
            account,
            build_client(config),
            policy=_policy(config),
            max_parallel=config.driver.max_parallel_contacts,
            interval=config.driver.interval_seconds,
        )
        logger.info(f"Starting slotmail v{__version__}")
        driver.run()
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
