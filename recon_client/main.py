"""
Command line entry point for the Reconciliation API Client.

Logs in against the reconciliation backend, keeps the session in the
configured credential store between runs, and issues authenticated requests.
"""

import argparse
import asyncio
import getpass
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional

from recon_client.api_client import ReconAPIClient
from recon_client.config import ClientConfiguration
from recon_client.resources import ReconResources, REPORT_KINDS, EXPORT_FORMATS
from recon_client.session import SessionController
from recon_shared.exceptions import (
    ReconClientError, AuthenticationError, ConfigurationError, handle_exception
)
from recon_shared.logging_config import (
    AuditLogger, LogFormat, LogLevel, setup_logging, log_structured_error
)
from recon_shared.models import LoginRedirect, LoginRequest, RegisterRequest

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_REQUEST_FAILED = 1
EXIT_AUTH_FAILED = 2
EXIT_CONFIG_ERROR = 3
EXIT_INTERRUPTED = 130


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="recon-client",
        description="Reconciliation API Client",
        epilog="""
Examples:
  %(prog)s login --email ops@example.com      # Prompts for the password
  %(prog)s whoami --json                      # Current user as JSON
  %(prog)s banks                              # Supported bank CSV formats
  %(prog)s request GET /reports/daily-summary
  %(prog)s report settlement --settlement-date 2024-01-31 --export excel

Exit Codes:
  0   - Success
  1   - Request failed
  2   - Authentication required or failed
  3   - Configuration error
  130 - Cancelled by user (Ctrl+C)
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Configuration file path")
    config_group.add_argument("--server-url", type=str, metavar="URL",
                              help="Server URL (overrides config)")
    config_group.add_argument("--timeout", type=float, metavar="SECONDS",
                              help="Request timeout (overrides config)")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Print results as JSON")
    output_group.add_argument("--verbose", "-v", action="store_true",
                              help="Enable verbose logging")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Write logs to file")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    login = commands.add_parser("login", help="Log in and store the session")
    login.add_argument("--email", required=True)
    login.add_argument("--password", help="Password (prompted when omitted)")

    register = commands.add_parser("register", help="Create an account and log in")
    register.add_argument("--username", required=True)
    register.add_argument("--email", required=True)
    register.add_argument("--password", help="Password (prompted when omitted)")
    register.add_argument("--full-name")
    register.add_argument("--company-name")

    commands.add_parser("logout", help="End the stored session")
    commands.add_parser("whoami", help="Show the authenticated user")

    change_password = commands.add_parser("change-password", help="Change the account password")
    change_password.add_argument("--current-password")
    change_password.add_argument("--new-password")

    commands.add_parser("banks", help="List supported bank CSV formats")

    upload = commands.add_parser("upload", help="Upload a bank statement CSV")
    upload.add_argument("path")
    upload.add_argument("--bank", default="auto",
                        help="Bank format, or 'auto' to detect (default: auto)")

    report = commands.add_parser("report", help="Fetch or export a report")
    report.add_argument("kind", choices=REPORT_KINDS)
    report.add_argument("--date")
    report.add_argument("--start-date")
    report.add_argument("--end-date")
    report.add_argument("--settlement-date")
    report.add_argument("--bank-name", default="GTBank")
    report.add_argument("--export", choices=sorted(EXPORT_FORMATS),
                        help="Download the report instead of printing it")
    report.add_argument("--output-dir", default=".")

    request = commands.add_parser("request", help="Send an authenticated request")
    request.add_argument("method")
    request.add_argument("path")
    request.add_argument("--data", metavar="JSON", help="JSON request body")

    return parser.parse_args(argv)


def load_configuration(args: argparse.Namespace) -> ClientConfiguration:
    """Load configuration and apply command line overrides."""
    config = ClientConfiguration(args.config)
    if args.server_url:
        config.set_override('server.url', args.server_url)
    if args.timeout is not None:
        config.set_override('server.timeout', args.timeout)
    if args.log_file:
        config.set_override('logging.file', args.log_file)
    return config


def configure_logging(args: argparse.Namespace, config: ClientConfiguration) -> None:
    """Configure logging from configuration and command line flags."""
    if args.debug:
        level = LogLevel.DEBUG
    elif args.verbose:
        level = LogLevel.INFO
    elif args.json:
        # Keep stdout clean for machine-readable output
        level = LogLevel.ERROR
    else:
        level = LogLevel(config.get_log_level())

    setup_logging(
        log_level=level,
        log_format=LogFormat(config.get_log_format()),
        log_file=config.get_log_file(),
        audit_file=config.get_audit_file()
    )


def _emit(args: argparse.Namespace, payload: Any, text: Optional[str] = None) -> None:
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    elif text is not None:
        print(text)
    elif isinstance(payload, (dict, list)):
        print(json.dumps(payload, indent=2, default=str))
    elif payload is not None:
        print(payload)


def _prompt_password(value: Optional[str], prompt: str = "Password: ") -> str:
    return value if value else getpass.getpass(prompt)


def _require_session(session: SessionController) -> bool:
    if session.store.has_session():
        return True
    print("Not logged in. Run 'recon-client login' first.", file=sys.stderr)
    return False


async def cmd_login(args, session: SessionController, resources: ReconResources) -> int:
    password = _prompt_password(args.password)
    auth = await session.login(LoginRequest(email=args.email, password=password))
    _emit(args, auth.user.to_dict(), f"Logged in as {auth.user.username}")
    return EXIT_SUCCESS


async def cmd_register(args, session: SessionController, resources: ReconResources) -> int:
    password = _prompt_password(args.password)
    auth = await session.register(RegisterRequest(
        username=args.username,
        email=args.email,
        password=password,
        full_name=args.full_name,
        company_name=args.company_name
    ))
    _emit(args, auth.user.to_dict(), f"Registered and logged in as {auth.user.username}")
    return EXIT_SUCCESS


async def cmd_logout(args, session: SessionController, resources: ReconResources) -> int:
    await session.logout()
    _emit(args, {'logged_out': True}, "Logged out")
    return EXIT_SUCCESS


async def cmd_whoami(args, session: SessionController, resources: ReconResources) -> int:
    verification = session.bootstrap()
    if verification is None:
        _require_session(session)
        return EXIT_AUTH_FAILED

    if not await verification:
        print("Stored session is no longer valid. Run 'recon-client login'.", file=sys.stderr)
        return EXIT_AUTH_FAILED

    user = session.user
    text = f"{user.username} <{user.email}>"
    if user.roles:
        text += f" [{', '.join(user.roles)}]"
    _emit(args, user.to_dict(), text)
    return EXIT_SUCCESS


async def cmd_change_password(args, session: SessionController, resources: ReconResources) -> int:
    if not _require_session(session):
        return EXIT_AUTH_FAILED

    current = _prompt_password(args.current_password, "Current password: ")
    new = _prompt_password(args.new_password, "New password: ")
    await session.change_password(current, new)
    _emit(args, {'password_changed': True}, "Password changed")
    return EXIT_SUCCESS


async def cmd_banks(args, session: SessionController, resources: ReconResources) -> int:
    if not _require_session(session):
        return EXIT_AUTH_FAILED

    banks = await resources.get_supported_banks()
    _emit(args, banks, "\n".join(str(bank) for bank in banks))
    return EXIT_SUCCESS


async def cmd_upload(args, session: SessionController, resources: ReconResources) -> int:
    if not _require_session(session):
        return EXIT_AUTH_FAILED

    if args.bank == 'auto':
        result = await resources.upload_csv_auto_detect(args.path)
    else:
        result = await resources.upload_csv(args.path, args.bank)
    _emit(args, result)
    return EXIT_SUCCESS


def _report_params(args) -> Dict[str, Any]:
    if args.kind == 'daily-summary':
        return {'date': args.date}
    if args.kind == 'settlement':
        return {'settlementDate': args.settlement_date, 'bankName': args.bank_name}
    return {'startDate': args.start_date, 'endDate': args.end_date}


async def cmd_report(args, session: SessionController, resources: ReconResources) -> int:
    if not _require_session(session):
        return EXIT_AUTH_FAILED

    params = _report_params(args)
    missing = [name for name, value in params.items() if value is None and name != 'date']
    if missing:
        print(f"Missing report parameters: {', '.join(missing)}", file=sys.stderr)
        return EXIT_REQUEST_FAILED

    if args.export:
        target = await resources.export_report(args.kind, args.export, args.output_dir, **params)
        _emit(args, {'file': str(target)}, f"Saved {target}")
        return EXIT_SUCCESS

    if args.kind == 'daily-summary':
        result = await resources.get_daily_summary(args.date)
    elif args.kind == 'discrepancies':
        result = await resources.get_discrepancy_report(args.start_date, args.end_date)
    elif args.kind == 'settlement':
        result = await resources.get_settlement_report(args.settlement_date, args.bank_name)
    else:
        result = await resources.get_audit_trail_report(args.start_date, args.end_date)
    _emit(args, result)
    return EXIT_SUCCESS


async def cmd_request(args, session: SessionController, resources: ReconResources) -> int:
    body = None
    if args.data:
        try:
            body = json.loads(args.data)
        except ValueError as e:
            print(f"Invalid JSON for --data: {e}", file=sys.stderr)
            return EXIT_REQUEST_FAILED

    response = await session.api_client.request(args.method, args.path, json=body)
    _emit(args, response.data)
    return EXIT_SUCCESS


COMMANDS: Dict[str, Callable[..., Awaitable[int]]] = {
    'login': cmd_login,
    'register': cmd_register,
    'logout': cmd_logout,
    'whoami': cmd_whoami,
    'change-password': cmd_change_password,
    'banks': cmd_banks,
    'upload': cmd_upload,
    'report': cmd_report,
    'request': cmd_request,
}


def _report_error(args: argparse.Namespace, error: ReconClientError) -> None:
    log_structured_error(logger, error, level=logging.DEBUG)
    if args.json:
        print(json.dumps(error.to_dict(), indent=2, default=str))
    else:
        print(f"Error: {error.user_message}", file=sys.stderr)


def _on_forced_logout(redirect: LoginRedirect) -> None:
    print(f"Session ended ({redirect.reason}). Run 'recon-client login' to sign in again.",
          file=sys.stderr)


async def run_command(args: argparse.Namespace, config: ClientConfiguration) -> int:
    """Run one command against a client built from configuration."""
    audit_logger = AuditLogger()
    api_client = ReconAPIClient.from_config(config, audit_logger=audit_logger)

    async with api_client:
        session = SessionController(api_client, login_path=config.get_login_path(),
                                    audit_logger=audit_logger)
        session.add_forced_logout_callback(_on_forced_logout)
        if config.is_auto_refresh_enabled() and session.store.has_session():
            session.start_auto_refresh()

        try:
            return await COMMANDS[args.command](args, session, ReconResources(api_client))
        finally:
            await session.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the client."""
    args = parse_arguments(argv)

    try:
        config = load_configuration(args)
        configure_logging(args, config)
        return asyncio.run(run_command(args, config))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_INTERRUPTED
    except ConfigurationError as e:
        _report_error(args, e)
        return EXIT_CONFIG_ERROR
    except AuthenticationError as e:
        _report_error(args, e)
        return EXIT_AUTH_FAILED
    except ReconClientError as e:
        _report_error(args, e)
        return EXIT_REQUEST_FAILED
    except (OSError, ValueError) as e:
        _report_error(args, handle_exception(e, context={'command': args.command}))
        return EXIT_REQUEST_FAILED


if __name__ == "__main__":
    sys.exit(main())
