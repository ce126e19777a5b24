"""
Let's Encrypt certificate manager for Rancher.

Validates the configuration, wires the ACME client, DNS provider and
Rancher store into the renewal orchestrator, and runs the renewal
scheduler until the process receives SIGINT or SIGTERM.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from rancher_letsencrypt import __version__
from rancher_letsencrypt.config import ConfigurationError, Settings, load_settings
from rancher_letsencrypt.core.acme_service import ACMEService
from rancher_letsencrypt.core.cert_scheduler import CertScheduler
from rancher_letsencrypt.core.dns import build_dns_provider
from rancher_letsencrypt.core.rancher_service import RancherService
from rancher_letsencrypt.core.renewal_orchestrator import RenewalOrchestrator

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("rancher_letsencrypt")


def configure_logging(settings: Settings = None) -> None:
    level = logging.INFO
    if settings is not None:
        level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level)
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    # Keep HTTP client chatter out of non-debug logs
    if level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("botocore").setLevel(logging.WARNING)


async def run(settings: Settings, stop: Optional[asyncio.Event] = None) -> None:
    """Run the renewal service until a shutdown signal arrives or `stop` is set."""
    dns_provider = build_dns_provider(settings)
    acme = ACMEService(settings, dns_provider)
    if settings.debug:
        acme.enable_debug()
    store = RancherService(settings)
    orchestrator = RenewalOrchestrator(settings, acme, store)
    cert_scheduler = CertScheduler(orchestrator, settings)

    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, stop.set)

    logger.info(
        f"Managing certificate '{settings.cert_name}' for {settings.domains} "
        f"({settings.api_version.value}, DNS provider {settings.provider.value})"
    )

    await cert_scheduler.start()
    try:
        await stop.wait()
        logger.info("Shutdown signal received")
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)
        await cert_scheduler.stop()
        await store.aclose()
        await dns_provider.aclose()


def main() -> None:
    configure_logging()
    logger.info(f"Starting Let's Encrypt certificate manager v{__version__}")

    try:
        settings = load_settings()
    except ConfigurationError as e:
        logger.critical(e.message)
        for error in e.errors:
            logger.critical(error)
        sys.exit(1)

    configure_logging(settings)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
