# verify.py
import logging
import time
from datetime import date
from typing import Callable, Optional

from credentials import CredentialBundle
from data import DeviceStore
from errors import AuthFailed, TransportError, VerificationTimeout
from license_info import license_patch
from transports.base import BaseTransport
from utils import log_event

logger = logging.getLogger(__name__)


def verify_license(ip: str, credentials: CredentialBundle, transport: BaseTransport,
                   store: DeviceStore, max_wait: float = 120, interval: float = 10,
                   timeout: Optional[float] = 10,
                   sleep: Callable[[float], None] = time.sleep,
                   today: Optional[date] = None) -> str:
    """Polls a device after a license change until it reports a usable license.

    While services restart the device drops its management plane, so every
    transport failure other than AuthFailed is retried every ``interval``
    seconds. The record is updated on success.

    Returns:
        The derived license status.

    Raises:
        VerificationTimeout: after ``max_wait`` seconds without a usable
            license. This says nothing about whether the change worked.
        AuthFailed: the device rejected the credentials.
    """
    elapsed = 0.0
    while elapsed < max_wait:
        try:
            info = transport.fetch_license_info(ip, credentials, timeout)
        except AuthFailed:
            raise
        except TransportError as e:
            logger.debug(f"Waiting for {ip} ({elapsed:g}s/{max_wait:g}s): {e.reason}")
        else:
            record = store.update(ip, license_patch(info, today))
            log_event(f"VERIFIED {ip}: {record.status} ({record.days} days)")
            logger.info(f"{ip} is back online: {record.status}")
            return record.status

        pause = min(interval, max_wait - elapsed)
        sleep(pause)
        elapsed += pause

    log_event(f"VERIFY_TIMEOUT {ip} after {max_wait:g}s")
    raise VerificationTimeout(ip, max_wait)
