"""Command line entry point."""

import argparse
import getpass
import logging
import sys
from datetime import date
from pathlib import Path
from typing import List, Optional

from .core.config import settings
from .core.config_validation import run_config_checks
from .core.models import DeploymentSlot
from .core.service_settings import ServiceSettings, ServiceSettingsError
from .services.artifact_service import LocalArtifactProvider
from .services.management_client import ServiceManagementClient
from .services.notification_service import NotificationService, format_notification
from .services.publish_service import PublishService
from .services.remote_desktop_service import RemoteDesktopService

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloudpublish", description="Publish packaged services to hosted cloud services"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    publish = commands.add_parser("publish", help="Publish the service in a service root directory")
    publish.add_argument("--service-root", default=".", help="Directory holding the package and settings")
    publish.add_argument("--subscription", help="Subscription id (defaults to CLOUDPUBLISH_SUBSCRIPTION_ID)")
    publish.add_argument("--name", help="Hosted service name")
    publish.add_argument("--storage-account", help="Storage account used to stage the package")
    publish.add_argument("--location", help="Region for newly created services")
    publish.add_argument("--slot", choices=[slot.value for slot in DeploymentSlot], help="Deployment slot")
    publish.add_argument("--package", help="Package path or URL of an already uploaded package")
    publish.add_argument("--configuration", help="Path of the cloud service configuration")
    publish.add_argument("--launch", action="store_true", help="Open the production URL when done")
    publish.add_argument("--confirm", action="store_true", help="Ask before publishing")

    remote = commands.add_parser("remote-desktop", help="Manage remote desktop access")
    remote_commands = remote.add_subparsers(dest="action", required=True)
    for action in ("enable", "disable"):
        sub = remote_commands.add_parser(action)
        sub.add_argument("--name", required=True, help="Hosted service name")
        sub.add_argument("--slot", default=DeploymentSlot.PRODUCTION.value,
                         choices=[slot.value for slot in DeploymentSlot])
        sub.add_argument("--subscription")
        if action == "enable":
            sub.add_argument("--username", required=True)
            sub.add_argument("--password", help="Prompted for when omitted")
            sub.add_argument("--thumbprint", required=True, help="Certificate used to encrypt the password")
            sub.add_argument("--thumbprint-algorithm", default="sha1")
            sub.add_argument("--expiration", type=date.fromisoformat, help="YYYY-MM-DD, default six months")
            sub.add_argument("--role", action="append", default=[], dest="roles")

    return parser


def _ask(service_settings: ServiceSettings) -> bool:
    answer = input(
        f"Publish {service_settings.service_name} to {service_settings.slot.value}? [y/N] "
    )
    return answer.strip().lower() in ("y", "yes")


def _notifications() -> NotificationService:
    notifications = NotificationService()
    notifications.subscribe(lambda notification: print(format_notification(notification)))
    return notifications


def _publish(args: argparse.Namespace) -> int:
    service_root = Path(args.service_root)
    artifacts = LocalArtifactProvider(
        service_root,
        package_location=args.package,
        configuration_path=Path(args.configuration) if args.configuration else None,
        confirm=_ask if args.confirm else None,
    )
    service_settings = ServiceSettings.load(
        artifacts.paths.settings,
        slot=args.slot,
        location=args.location,
        subscription=args.subscription,
        storage_account_name=args.storage_account,
        name=args.name,
        default_name=artifacts.default_service_name(),
        default_location=settings.default_location,
        default_subscription=settings.subscription_id,
    )
    if not service_settings.subscription:
        raise ServiceSettingsError("No subscription given; pass --subscription")

    with ServiceManagementClient(service_settings.subscription) as channel:
        publisher = PublishService(channel, artifacts, notifications=_notifications())
        result = publisher.publish(service_settings, launch=args.launch)

    if result.service_url:
        print(result.service_url)
    return EXIT_OK


def _remote_desktop(args: argparse.Namespace) -> int:
    subscription = args.subscription or settings.subscription_id
    if not subscription:
        raise ServiceSettingsError("No subscription given; pass --subscription")
    slot = DeploymentSlot.parse(args.slot)

    with ServiceManagementClient(subscription) as channel:
        service = RemoteDesktopService(channel, notifications=_notifications())
        if args.action == "enable":
            password = args.password or getpass.getpass("Remote desktop password: ")
            service.enable(
                args.name,
                slot,
                args.username,
                password,
                subscription_id=subscription,
                thumbprint=args.thumbprint,
                thumbprint_algorithm=args.thumbprint_algorithm,
                expiration=args.expiration,
                roles=args.roles,
            )
        else:
            service.disable(args.name, slot, subscription_id=subscription)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging()

    validation = run_config_checks()
    for issue in validation.warnings:
        logger.warning("%s %s", issue.message, issue.hint or "")
    if validation.has_errors:
        for issue in validation.errors:
            print(f"error: {issue.message} {issue.hint or ''}".rstrip(), file=sys.stderr)
        return EXIT_CONFIG

    handler = _publish if args.command == "publish" else _remote_desktop
    try:
        return handler(args)
    except ServiceSettingsError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except Exception as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
