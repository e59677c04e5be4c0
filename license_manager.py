# license_manager.py
import argparse
import contextlib
import logging
import os
import signal
import sys
import tempfile
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

from dynaconf import Dynaconf

from credentials import DEFAULT_KEY_PATH, CredentialBundle, credentials_for
from data import DeviceStore
from device import AUTH_TYPES, AUTH_UNSET, STATUS_UNKNOWN, DeviceRecord
from errors import (CredentialError, DeviceNotFound, LicenseManagerError, TransportError,
                    Unlicensed, ValidationError, VerificationTimeout)
from license_info import UNKNOWN, LicenseInfo, is_virtual_edition, license_patch
from session import RemoteSession
from transports import FallbackTransport, get_transport
from transports.base import BaseTransport
from utils import clean_host, is_valid_host, log_event, operator_lock
from verify import verify_license

# Load settings
config = Dynaconf(
    settings_files=['config/settings.toml'],
    envvar_prefix="F5LM",
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_TIMEOUT = 3
EXIT_INTERRUPTED = 130

HISTORY_LINES = 15

LICENSE_MARKERS = ("Auth vers", "Registration Key", "License")

BatchResult = Union[DeviceRecord, LicenseManagerError]


def validate_license_content(content: str) -> bool:
    """Checks that pasted or loaded text looks like a BIG-IP license file."""
    return any(marker.lower() in content.lower() for marker in LICENSE_MARKERS)


class LicenseManager:
    """License operations across the devices in a DeviceStore."""

    def __init__(self, store: DeviceStore, data_dir: Path,
                 timeouts: Optional[Dict[str, float]] = None,
                 max_wait: float = 120, interval: float = 10,
                 ssh_settings: Optional[Dict] = None,
                 resolver: Callable[..., contextlib.AbstractContextManager] = credentials_for,
                 transport_factory: Callable[..., BaseTransport] = get_transport,
                 mutation_transport_factory: Callable[..., BaseTransport] = FallbackTransport.for_credentials,
                 session_factory: Callable[..., RemoteSession] = RemoteSession,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.data_dir = Path(data_dir).expanduser()
        self.timeouts = dict(timeouts or {})
        self.max_wait = max_wait
        self.interval = interval
        self.ssh_settings = dict(ssh_settings or {})
        self.resolver = resolver
        self.transport_factory = transport_factory
        self.mutation_transport_factory = mutation_transport_factory
        self.session_factory = session_factory
        self.sleep = sleep

    @property
    def license_file(self) -> str:
        return self.ssh_settings.get("license_file", "/config/bigip.license")

    def _record(self, ip: str) -> DeviceRecord:
        ip = clean_host(ip)
        if not is_valid_host(ip):
            raise ValidationError(f"Invalid IP/hostname: {ip!r}")
        record = self.store.get(ip)
        if record is None:
            raise DeviceNotFound(ip)
        return record

    @contextlib.contextmanager
    def _credentials(self, record: DeviceRecord) -> Iterator[CredentialBundle]:
        with self.resolver(record.ip, auth_hint=record.auth_type,
                           default_key_path=self.ssh_settings.get("default_key", DEFAULT_KEY_PATH)) as creds:
            yield creds

    def _transport(self, creds: CredentialBundle) -> BaseTransport:
        return self.transport_factory(creds, self.timeouts, self.license_file)

    def _verify(self, ip: str, creds: CredentialBundle) -> str:
        return verify_license(ip, creds, self._transport(creds), self.store,
                              max_wait=self.max_wait, interval=self.interval,
                              timeout=self.timeouts.get("auth", 10), sleep=self.sleep)

    # --- Device management ---
    def add_device(self, ip: str, auth_type: str = AUTH_UNSET) -> DeviceRecord:
        return self.store.add(clean_host(ip), auth_type)

    def remove_device(self, ip: str) -> None:
        self.store.remove(clean_host(ip))

    def set_auth_type(self, ip: str, auth_type: str) -> DeviceRecord:
        if auth_type not in AUTH_TYPES:
            raise ValidationError(f"Invalid auth type: {auth_type!r}")
        ip = self._record(ip).ip
        record = self.store.update(ip, {"auth_type": auth_type})
        log_event(f"AUTH_TYPE {ip}: {auth_type}")
        return record

    # --- License reads ---
    def fetch(self, ip: str) -> Tuple[DeviceRecord, LicenseInfo]:
        """Reads the license from one device and stores the derived status."""
        record = self._record(ip)
        ip = record.ip
        with self._credentials(record) as creds:
            try:
                info = self._transport(creds).fetch_license_info(ip, creds, self.timeouts.get("license"))
            except Unlicensed:
                log_event(f"CHECKED {ip}: unlicensed")
                raise
        record = self.store.update(ip, license_patch(info))
        log_event(f"CHECKED {ip}: {record.status} ({record.days} days)")
        return record, info

    def check(self, ip: str) -> DeviceRecord:
        return self.fetch(ip)[0]

    def check_many(self, ips: Optional[List[str]] = None) -> Dict[str, BatchResult]:
        """Checks devices one at a time; one device failing does not stop the rest."""
        results: Dict[str, BatchResult] = {}
        for ip in ips if ips is not None else [r.ip for r in self.store.all()]:
            try:
                results[ip] = self.check(ip)
            except (TransportError, CredentialError, ValidationError) as e:
                logger.warning(f"{ip}: {e}")
                results[ip] = e
        return results

    # --- License changes ---
    def renew(self, ip: str, regkey: str) -> str:
        """Installs a registration key and waits for the device to come back."""
        if not regkey:
            raise ValidationError("Registration key required")
        record = self._record(ip)
        ip = record.ip
        with self._credentials(record) as creds:
            self.mutation_transport_factory(creds, self.timeouts, self.license_file).install_license(ip, creds, regkey)
            log_event(f"RENEWED {ip} with {regkey[:10]}...")
            return self._verify(ip, creds)

    def reload(self, ip: str) -> str:
        """Reloads the license file already on the device."""
        record = self._record(ip)
        ip = record.ip
        with self._credentials(record) as creds:
            with self._session(ip, creds) as session:
                session.run("reloadlic")
            log_event(f"RELOAD {ip}")
            return self._verify(ip, creds)

    def dossier(self, ip: str, regkey: Optional[str] = None,
                addon_key: Optional[str] = None) -> Tuple[str, Path]:
        """Generates a dossier and saves it under the data directory."""
        record = self._record(ip)
        ip = record.ip
        with self._credentials(record) as creds:
            if not regkey:
                regkey = record.regkey or self._transport(creds).fetch_license_info(ip, creds).regkey
            if not regkey:
                raise ValidationError("Registration key required for dossier")
            transport = self.mutation_transport_factory(creds, self.timeouts, self.license_file)
            dossier = transport.get_dossier(ip, creds, regkey, addon_key)

        prefix = "dossier_addon" if addon_key else "dossier"
        dossier_file = self.data_dir / f"{prefix}_{ip.replace('.', '_')}.txt"
        dossier_file.parent.mkdir(parents=True, exist_ok=True)
        dossier_file.write_text(dossier + "\n", encoding="utf-8")
        self.store.update(ip, {"regkey": regkey})
        log_event(f"{'ADDON_DOSSIER' if addon_key else 'DOSSIER'} {ip} ({regkey})")
        return dossier, dossier_file

    def _session(self, ip: str, creds: CredentialBundle) -> RemoteSession:
        return self.session_factory(ip, creds, timeout=int(self.timeouts.get("connect", 10)),
                                    command_timeout=self.timeouts.get("install", 60),
                                    reuse=bool(self.ssh_settings.get("reuse_session", True)))

    def apply_license(self, ip: str, content: str) -> str:
        """Backs up the current license, uploads ``content`` and reloads, over one SSH session."""
        if not content.strip():
            raise ValidationError("No license content provided")
        record = self._record(ip)
        ip = record.ip
        backup_dir = self.ssh_settings.get("backup_dir", "/var/tmp")
        backup = f"{backup_dir}/bigip.license.backup.{datetime.now():%Y%m%d_%H%M%S}"

        with self._credentials(record) as creds:
            fd, temp_name = tempfile.mkstemp(prefix="f5lm_license_")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content if content.endswith("\n") else content + "\n")
                with self._session(ip, creds) as session:
                    session.run(f"cp {self.license_file} {backup} 2>/dev/null || true")
                    logger.info(f"Backup: {backup}")
                    session.transfer(temp_name, self.license_file)
                    session.run("reloadlic")
            finally:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(temp_name)
            log_event(f"LICENSE_APPLIED {ip}")
            return self._verify(ip, creds)

    def revoke(self, ip: str, force: bool = False) -> DeviceRecord:
        """Revokes the license so the registration key can move to another device."""
        record = self._record(ip)
        ip = record.ip
        with self._credentials(record) as creds:
            info = self._transport(creds).fetch_license_info(ip, creds)
            if not is_virtual_edition(info.platform_id) and not force:
                raise ValidationError(f"{ip} is platform {info.platform_id or 'unknown'}; "
                                      "only Virtual Edition licenses can be transferred")
            self.mutation_transport_factory(creds, self.timeouts, self.license_file).revoke_license(ip, creds)
        # "revoked" does not parse as a date, so the status derives to unknown
        record = self.store.update(ip, {"expires": "revoked", "days": UNKNOWN, "status": STATUS_UNKNOWN,
                                        "svc_check_date": "", "regkey": None})
        log_event(f"TRANSFER_REVOKED {ip} ({info.regkey})")
        return record

    def prepare_activation(self, ip: str, regkey: Optional[str] = None,
                           auth_type: str = AUTH_UNSET) -> Tuple[str, Path]:
        """First half of an activation: registers the device if needed and fetches its dossier."""
        ip = clean_host(ip)
        if not self.store.exists(ip):
            self.add_device(ip, auth_type)
        return self.dossier(ip, regkey)

    # --- History ---
    def history(self, limit: int = HISTORY_LINES) -> List[str]:
        """Returns the most recent history events, oldest first."""
        history_file = self.data_dir / "history.log"
        if not history_file.is_file():
            return []
        with history_file.open("r", encoding="utf-8") as handle:
            return [line.rstrip("\n") for line in deque(handle, maxlen=limit)]


def build_manager(settings: Dynaconf = config) -> LicenseManager:
    data_dir = Path(settings.get("general", {}).get("data_dir", "~/.f5lm")).expanduser()
    verify_settings = settings.get("verify", {})
    return LicenseManager(
        store=DeviceStore(data_dir / "devices.json"),
        data_dir=data_dir,
        timeouts=dict(settings.get("timeouts", {})),
        max_wait=verify_settings.get("max_wait", 120),
        interval=verify_settings.get("interval", 10),
        ssh_settings=dict(settings.get("ssh", {})),
    )


def setup_logging(data_dir: Path, debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s')
    history = logging.getLogger("history")
    data_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(data_dir / "history.log", encoding="utf-8")
    handler.setFormatter(logging.Formatter('[%(asctime)s] %(message)s', datefmt='%Y-%m-%d %H:%M:%S'))
    history.addHandler(handler)


def _confirm(prompt: str, assume_yes: bool, expected: str = "y") -> bool:
    if assume_yes:
        return True
    answer = input(f"  {prompt} ").strip()
    return answer == expected if expected != "y" else answer.lower() == "y"


def _print_record(record: DeviceRecord) -> None:
    days = "-" if record.days is None else record.days
    print(f"  {record.ip:<20} {record.expires or '-':<14} {record.svc_check_date or '-':<12} "
          f"{days!s:<10} {record.status}")


def _read_license_source(source: Optional[str]) -> str:
    if source and source != "-":
        path = Path(source).expanduser()
        if not path.is_file():
            raise ValidationError(f"File not found: {path}")
        return path.read_text(encoding="utf-8")
    print("  Paste the license, then press Ctrl-D:")
    return sys.stdin.read()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="f5lm", description="F5 BIG-IP license manager")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Add device(s)")
    add.add_argument("ips", nargs="+")
    add.add_argument("--auth", choices=AUTH_TYPES, default=AUTH_UNSET, help="Authentication to use for this device")
    add.add_argument("--no-check", action="store_true", help="Do not check the license after adding")

    remove = sub.add_parser("remove", help="Remove a device")
    remove.add_argument("ip")

    sub.add_parser("list", help="Show all devices")

    check = sub.add_parser("check", help="Check license status")
    check.add_argument("target", nargs="?", default="all", help="IP address or 'all'")

    details = sub.add_parser("details", help="Full license info")
    details.add_argument("ip")

    auth = sub.add_parser("auth", help="Change the stored authentication type")
    auth.add_argument("ip")
    auth.add_argument("auth_type", choices=AUTH_TYPES)

    renew = sub.add_parser("renew", help="Apply a registration key")
    renew.add_argument("ip")
    renew.add_argument("regkey")

    reload_ = sub.add_parser("reload", help="Reload the license over SSH")
    reload_.add_argument("ip")

    dossier = sub.add_parser("dossier", help="Generate a dossier")
    dossier.add_argument("ip")
    dossier.add_argument("regkey", nargs="?")
    dossier.add_argument("--addon", help="Add-on registration key")

    apply = sub.add_parser("apply-license", help="Upload and reload a license file")
    apply.add_argument("ip")
    apply.add_argument("source", nargs="?", help="License file, or '-' to read stdin")

    revoke = sub.add_parser("revoke", help="Revoke the license for transfer to another device")
    revoke.add_argument("ip")
    revoke.add_argument("--force", action="store_true", help="Revoke even on non-VE platforms")

    activate = sub.add_parser("activate", help="Fetch a dossier, then install a registration key")
    activate.add_argument("ip")
    activate.add_argument("regkey", nargs="?", help="Registration key used for the dossier and the install")
    activate.add_argument("--auth", choices=AUTH_TYPES, default=AUTH_UNSET,
                          help="Authentication to use if the device is new")

    history = sub.add_parser("history", help="Show recent events")
    history.add_argument("-n", "--lines", type=int, default=HISTORY_LINES)
    return parser


def run_command(manager: LicenseManager, args: argparse.Namespace) -> int:
    if args.command == "add":
        added = []
        for ip in args.ips:
            record = manager.add_device(ip, args.auth)
            print(f"  [OK] Added {record.ip}")
            added.append(record.ip)
        if not args.no_check:
            return _report_batch(manager.check_many(added))
        return EXIT_OK

    if args.command == "remove":
        if not _confirm(f"Remove {args.ip}? [y/N]:", args.yes):
            print("  Cancelled")
            return EXIT_OK
        manager.remove_device(args.ip)
        print(f"  [OK] Removed {args.ip}")
        return EXIT_OK

    if args.command == "list":
        if manager.store.count() == 0:
            print("  No devices yet. Use 'add <ip>' to add one.")
        for record in manager.store.all():
            _print_record(record)
        return EXIT_OK

    if args.command == "check":
        ips = None if args.target == "all" else [args.target]
        return _report_batch(manager.check_many(ips))

    if args.command == "details":
        record, info = manager.fetch(args.ip)
        for label, value in (("IP", record.ip), ("Status", f"{record.status} ({record.days} days)"),
                             ("License End", info.expiry or "perpetual"), ("Svc Check", info.service_check_date),
                             ("Licensed On", info.licensed_on), ("Platform", info.platform_id),
                             ("Reg Key", info.regkey)):
            print(f"  {label + ':':<14} {value or 'N/A'}")
        return EXIT_OK

    if args.command == "auth":
        manager.set_auth_type(args.ip, args.auth_type)
        print(f"  [OK] {args.ip} now uses {args.auth_type} authentication")
        return EXIT_OK

    if args.command == "dossier":
        dossier, path = manager.dossier(args.ip, args.regkey, args.addon)
        print(dossier)
        print(f"  Saved to: {path}")
        print("  Paste it at https://activate.f5.com/license/dossier.jsp")
        return EXIT_OK

    if args.command == "history":
        lines = manager.history(args.lines)
        if not lines:
            print("  No history yet")
        for line in lines:
            print(f"  {line}")
        return EXIT_OK

    if args.command == "activate":
        dossier, path = manager.prepare_activation(args.ip, args.regkey, args.auth)
        print(dossier)
        print(f"  Saved to: {path}")
        print("  Paste it at https://activate.f5.com/license/dossier.jsp")
        regkey = args.regkey
        if not regkey and not args.yes:
            regkey = input("  Enter registration key (or Enter to skip): ").strip()
        if not regkey or not _confirm("This restarts services on the device. Proceed? [y/N]:", args.yes):
            print(f"  When ready: renew {clean_host(args.ip)} <key>")
            return EXIT_OK
        status = manager.renew(args.ip, regkey)
        print(f"  [OK] {args.ip}: {status}")
        return EXIT_OK

    if args.command == "revoke":
        if not _confirm(f"Type REVOKE to release the license on {args.ip}:", args.yes, expected="REVOKE"):
            print("  Cancelled")
            return EXIT_OK
        manager.revoke(args.ip, force=args.force)
        print(f"  [OK] License revoked on {args.ip}")
        return EXIT_OK

    # Remaining commands restart services on the device
    if not _confirm("This restarts services on the device. Proceed? [y/N]:", args.yes):
        print("  Cancelled")
        return EXIT_OK
    if args.command == "renew":
        status = manager.renew(args.ip, args.regkey)
    elif args.command == "reload":
        status = manager.reload(args.ip)
    else:
        content = _read_license_source(args.source)
        if not validate_license_content(content) and not _confirm(
                "License content may be incomplete or invalid. Continue anyway? [y/N]:", args.yes):
            print("  Cancelled")
            return EXIT_OK
        status = manager.apply_license(args.ip, content)
    print(f"  [OK] {args.ip}: {status}")
    return EXIT_OK


def _report_batch(results: Dict[str, BatchResult]) -> int:
    failures = 0
    for ip, result in results.items():
        if isinstance(result, DeviceRecord):
            _print_record(result)
        else:
            failures += 1
            print(f"  {ip:<20} x {result}")
    return EXIT_ERROR if failures else EXIT_OK


def _terminate(signum, frame):
    raise SystemExit(143)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    manager = build_manager()
    setup_logging(manager.data_dir, args.debug)
    signal.signal(signal.SIGTERM, _terminate)

    try:
        with operator_lock(manager.data_dir):
            return run_command(manager, args)
    except VerificationTimeout as e:
        logger.warning(f"{e}. The change has probably been applied; run 'check {e.ip}' in a few minutes.")
        return EXIT_TIMEOUT
    except ValidationError as e:
        logger.error(str(e))
        return EXIT_USAGE
    except LicenseManagerError as e:
        logger.error(str(e))
        return EXIT_ERROR
    except KeyboardInterrupt:
        print()
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
