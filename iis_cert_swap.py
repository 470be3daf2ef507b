#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# iis_cert_swap.py — Install/replace a TLS certificate in the Windows machine store and rebind it to an IIS site.
#
# Features:
#  - YAML config (-C/--config) merging with CLI arguments
#  - PFX pre-flight inspection (subject, thumbprint, expiry) before anything is touched
#  - Old/new certificate lookup by subject prefix, with local server certificate exclusion
#  - Remove-then-add rebinding of the site HTTPS binding and its SSL certificate binding
#  - Old certificate deleted only after the replacement binding succeeded
#  - Removal mode: --remove tears down the binding and deletes the matching certificate
#  - Dry-run mode for testing without changes
#  - Best-effort steps: every step outcome lands in the run report, nothing aborts the run
#  - Transcript log in the task sequence log directory or the system temp directory
#  - Sensitive data scrubbing in logs
#
# Version: 1.0.0
#
# MIT License

import argparse
import base64
import datetime
import ipaddress
import json
import os
import platform
import re
import socket
import subprocess
import sys
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

# Dependency checking with better error messages
missing_msgs = []

try:
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.serialization import pkcs12
    from cryptography.x509.oid import NameOID
except ImportError as e:
    missing_msgs.append(("[cryptography]", "pip3 install cryptography", str(e)))

try:
    import yaml as yml
except ImportError:
    yml = None

if missing_msgs:
    for pkg, pip_hint, error in missing_msgs:
        print(f"[!] Missing required Python module: {pkg}")
        print(f"    pip:   {pip_hint}")
        print(f"    error: {error}")
    sys.exit(1)

VERSION = "1.0.0"

DEFAULT_SITE = "Default Web Site"
DEFAULT_PORT = 443
WILDCARD_IP = "*"
DEFAULT_PFX_NAME = "pkcs12.pfx"
CERT_STORE_LOCATION = "Cert:\\LocalMachine\\My"
SSL_BINDINGS_PATH = "IIS:\\SslBindings"
PASSWORD_ENV = "IIS_CERT_SWAP_PFX_PASSWORD"
LOG_PREFIX = "IISCertSwap"

# Child-process variable used to hand the PFX password to PowerShell
_SECRET_ENV = "IIS_CERT_SWAP_PFX_SECRET"

# Shorter literals would be scrubbed out of thumbprints and ordinary words
_MIN_SECRET_LENGTH = 4

_THUMBPRINT_RE = re.compile(r"^[0-9A-F]{40}$")

# ---------------------------
# Configuration & Validation
# ---------------------------

class LogLevel(Enum):
    """Supported log levels."""
    STANDARD = "standard"
    DEBUG = "debug"


def default_pfx_path() -> str:
    """Return pkcs12.pfx beside the executable (or this script when not frozen)."""
    if getattr(sys, "frozen", False):
        base = Path(sys.executable).resolve().parent
    else:
        base = Path(__file__).resolve().parent
    return str(base / DEFAULT_PFX_NAME)


@dataclass
class Config:
    """Configuration container with validation."""
    subject: Optional[str] = None
    pfx: Optional[str] = None
    password: Optional[str] = None
    site: str = DEFAULT_SITE
    ip: str = WILDCARD_IP
    port: int = DEFAULT_PORT
    host_header: Optional[str] = None
    sni: bool = False
    remove: bool = False
    exclude_local_server_cert: bool = True
    dry_run: bool = False
    log: Optional[str] = None
    log_level: str = "standard"
    powershell_timeout: int = 300

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self):
        """Validate configuration values."""
        if not self.subject or not str(self.subject).strip():
            raise ValueError("Subject is required")

        if not self.site:
            raise ValueError("Site name must not be empty")

        if not isinstance(self.port, int) or isinstance(self.port, bool) or not (1 <= self.port <= 65535):
            raise ValueError(f"Port must be an integer between 1-65535, got: {self.port}")

        if self.ip != WILDCARD_IP:
            try:
                ipaddress.ip_address(self.ip)
            except ValueError:
                raise ValueError(f"ip must be '{WILDCARD_IP}' or an IP address, got: {self.ip}")

        for name in ("sni", "remove", "exclude_local_server_cert", "dry_run"):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ValueError(f"{name} must be true or false, got: {value!r}")

        if self.powershell_timeout <= 0:
            raise ValueError(f"powershell_timeout must be positive, got: {self.powershell_timeout}")

        if self.log_level not in [level.value for level in LogLevel]:
            raise ValueError(f"log_level must be one of {[level.value for level in LogLevel]}, got: {self.log_level}")

        if self.password is not None:
            self.password = str(self.password)

        # Removal never needs a PFX
        if self.remove:
            self.pfx = None
        elif not self.pfx:
            self.pfx = default_pfx_path()

        # Expand paths
        if self.pfx:
            self.pfx = str(Path(self.pfx).expanduser().resolve())
        if self.log:
            self.log = str(Path(self.log).expanduser().resolve())

    @property
    def binding(self) -> "BindingSpec":
        """Return the binding slot this configuration targets."""
        return BindingSpec(
            site=self.site,
            ip=self.ip,
            port=self.port,
            host_header=self.host_header,
            sni=self.sni,
        )

    def to_request(self) -> "ReconciliationRequest":
        """Build the immutable request the reconciler operates on."""
        return ReconciliationRequest(
            pfx_path=None if self.remove else self.pfx,
            subject=self.subject.strip(),
            password=self.password,
            binding=self.binding,
            exclude_local_server_cert=self.exclude_local_server_cert,
        )

# ---------------------------
# Custom Exceptions
# ---------------------------

class IISCertSwapError(Exception):
    """Base exception for IISCertSwap errors."""
    pass

class ConfigurationError(IISCertSwapError):
    """Configuration validation error."""
    pass

class CertificateError(IISCertSwapError):
    """PFX file processing error."""
    pass

class StoreError(IISCertSwapError):
    """A certificate store or binding store operation failed."""
    pass

class PowerShellError(StoreError):
    """PowerShell could not be started or the script failed."""
    pass

class ModuleLoadError(StoreError):
    """The IIS administration module is unavailable."""
    pass

# ---------------------------
# Logging
# ---------------------------

class Logger:
    """Transcript logger with run correlation and secret scrubbing."""

    def __init__(self, path: Optional[str], level: LogLevel):
        self.path = path
        self.level = level
        self.fp = None
        self.run_id: Optional[str] = None
        self.secrets: List[str] = []

        if self.path:
            self._open_log_file()

    def _open_log_file(self):
        """Open log file with proper error handling."""
        try:
            log_path = Path(self.path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self.fp = open(log_path, "a", encoding="utf-8")
        except OSError as e:
            print(f"[!] Could not open log file '{self.path}': {e}")
            self.fp = None

    def set_run_id(self, run_id: str):
        """Set run ID for correlation."""
        self.run_id = run_id

    def add_secret(self, value: Optional[str]):
        """Register a literal value that must never reach the log.

        Values shorter than ``_MIN_SECRET_LENGTH`` are left to the
        password patterns in ``_scrub``.
        """
        if value and len(value) >= _MIN_SECRET_LENGTH:
            self.secrets.append(value)

    def _ts(self) -> str:
        """Generate timestamp."""
        return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def _scrub(self, s: Union[str, Dict, Any]) -> str:
        """Scrub sensitive information from log messages."""
        if not isinstance(s, str):
            try:
                s = json.dumps(s, default=str)
            except (TypeError, ValueError):
                s = str(s)

        for secret in self.secrets:
            s = s.replace(secret, "<REDACTED>")

        patterns = [
            (r"([\"']?password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", r"\1<REDACTED>"),
            (r"(-Password\s+)(?![$(])\S+", r"\1<REDACTED>"),
            (r"(ConvertTo-SecureString\s+-String\s+)(?!\$)\S+", r"\1<REDACTED>"),
        ]

        for pattern, replacement in patterns:
            s = re.sub(pattern, replacement, s, flags=re.IGNORECASE)

        return s

    def _prefix(self) -> str:
        return f"[{self.run_id[:8]}] " if self.run_id else ""

    def _format_message(self, level: str, msg: str, context: Optional[Dict[str, Any]] = None) -> str:
        """Format log message with run correlation."""
        if self.level == LogLevel.DEBUG and context:
            formatted_msg = f"{self._prefix()}{msg} | context={json.dumps(context, default=str)}"
        else:
            formatted_msg = f"{self._prefix()}{msg}"

        return f"{self._ts()} {level.upper()} {self._scrub(formatted_msg)}"

    def _write(self, level: str, msg: str, context: Optional[Dict[str, Any]] = None):
        """Write log entry."""
        if not self.fp:
            return

        try:
            self.fp.write(self._format_message(level, msg, context) + "\n")
            self.fp.flush()
        except OSError:
            # A broken transcript must not break the run
            pass

    def info(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        """Log info message."""
        self._write("info", msg, context)
        if also_stdout:
            print(f"{self._prefix()}{self._scrub(msg)}")

    def warn(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        """Log warning message."""
        self._write("warn", msg, context)
        if also_stdout:
            print(f"[!] {self._prefix()}{self._scrub(msg)}")

    def error(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        """Log error message."""
        self._write("error", msg, context)
        if also_stdout:
            print(f"[!] {self._prefix()}{self._scrub(msg)}", file=sys.stderr)

    def debug(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        """Log debug message."""
        if self.level == LogLevel.DEBUG:
            self._write("debug", msg, context)
            if also_stdout:
                print(f"[DEBUG] {self._prefix()}{self._scrub(msg)}")

    def close(self):
        """Close log file."""
        if self.fp:
            self.fp.close()
            self.fp = None

# ---------------------------
# Data Model
# ---------------------------

def normalize_thumbprint(thumbprint: str) -> str:
    """Upper-case a thumbprint and strip the separators certmgr likes to show."""
    return re.sub(r"[\s:]", "", thumbprint or "").upper()


def subject_filter(subject: str) -> str:
    """Turn a subject match string into a distinguished name prefix.

    A bare name is taken as a common name, so ``example.com`` becomes
    ``CN=example.com``. Strings that already start with an attribute
    (``CN=``, ``O=``, ...) are used as given.
    """
    s = subject.strip()
    if re.match(r"^[A-Za-z]+=", s):
        return s
    return f"CN={s}"


def subject_matches(record_subject: str, prefix: str) -> bool:
    """Case-insensitive prefix match, the way PowerShell's -like compares."""
    return (record_subject or "").strip().casefold().startswith(prefix.strip().casefold())


@dataclass(frozen=True)
class CertificateRecord:
    """A certificate as the machine store reports it."""
    thumbprint: str
    subject: str
    not_before: Optional[datetime.datetime] = None
    not_after: Optional[datetime.datetime] = None
    has_private_key: bool = True


@dataclass(frozen=True)
class BindingSpec:
    """A logical HTTPS binding slot on an IIS site.

    ``host_header=None`` means the binding has no host header. An empty
    string is kept as a real value and goes through the host header path.
    """
    site: str = DEFAULT_SITE
    ip: str = WILDCARD_IP
    port: int = DEFAULT_PORT
    host_header: Optional[str] = None
    sni: bool = False

    @property
    def has_host_header(self) -> bool:
        return self.host_header is not None

    @property
    def is_wildcard(self) -> bool:
        return self.ip in (WILDCARD_IP, "0.0.0.0")

    @property
    def binding_information(self) -> str:
        """IIS bindingInformation string, ``ip:port:host``."""
        ip = self.ip
        if ":" in ip:
            ip = f"[{ip}]"
        return f"{ip}:{self.port}:{self.host_header or ''}"

    @property
    def ssl_flags(self) -> int:
        return 1 if self.sni else 0

    @property
    def ssl_binding_key(self) -> str:
        """Key of the HTTP.sys SSL binding behind this slot.

        IP based bindings live at ``0.0.0.0!443``; SNI bindings are keyed by
        host name, ``!443!www.example.com``.
        """
        if self.sni:
            ip = "" if self.is_wildcard else self.ip
            return f"{ip}!{self.port}!{self.host_header or ''}"
        ip = "0.0.0.0" if self.is_wildcard else self.ip
        return f"{ip}!{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "site": self.site,
            "ip": self.ip,
            "port": self.port,
            "host_header": self.host_header,
            "sni": self.sni,
        }


@dataclass(frozen=True)
class SiteBinding:
    """An existing site-level binding."""
    protocol: str
    binding_information: str
    ssl_flags: int = 0


@dataclass(frozen=True)
class ReconciliationRequest:
    """Everything one run works from. ``pfx_path=None`` asks for removal."""
    pfx_path: Optional[str]
    subject: str
    password: Optional[str] = field(default=None, repr=False)
    binding: BindingSpec = field(default_factory=BindingSpec)
    exclude_local_server_cert: bool = True

    @property
    def is_removal(self) -> bool:
        return self.pfx_path is None

    @property
    def subject_prefix(self) -> str:
        return subject_filter(self.subject)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": "remove" if self.is_removal else "install",
            "pfx": self.pfx_path,
            "subject": self.subject,
            "binding": self.binding.to_dict(),
            "exclude_local_server_cert": self.exclude_local_server_cert,
        }


_TS_LOG_PROBE = r"""
try { $ts = New-Object -ComObject Microsoft.SMS.TSEnvironment } catch { return }
$path = [string]$ts.Value('_SMSTSLogPath')
if ($path) { ConvertTo-Json -InputObject $path -Compress }
"""


@dataclass(frozen=True)
class RunContext:
    """Ambient facts about the machine the tool runs on."""
    machine_name: str
    fqdn: Optional[str] = None
    task_sequence: bool = False
    log_dir: Optional[str] = None

    @classmethod
    def detect(cls, powershell: Optional["PowerShell"] = None) -> "RunContext":
        """Read machine name and, inside a task sequence, its log directory."""
        machine = os.environ.get("COMPUTERNAME") or platform.node() or socket.gethostname()
        fqdn = socket.getfqdn()

        ts_log_dir = None
        if powershell is not None:
            try:
                ts_log_dir = powershell.run(_TS_LOG_PROBE)
            except PowerShellError:
                # No task sequence environment on this machine
                ts_log_dir = None

        return cls(
            machine_name=machine,
            fqdn=fqdn if fqdn and fqdn.casefold() != machine.casefold() else None,
            task_sequence=bool(ts_log_dir),
            log_dir=ts_log_dir or tempfile.gettempdir(),
        )

    def is_local_server_subject(self, subject: str) -> bool:
        """True when ``subject`` is the machine's own identity certificate."""
        own = {f"cn={self.machine_name}".casefold()}
        if self.fqdn:
            own.add(f"cn={self.fqdn}".casefold())
        return (subject or "").strip().casefold() in own

    def transcript_path(self, now: Optional[datetime.datetime] = None) -> str:
        """Timestamped transcript file in the log directory."""
        now = now or datetime.datetime.now()
        log_dir = self.log_dir or tempfile.gettempdir()
        return str(Path(log_dir) / f"{LOG_PREFIX}-{now.strftime('%Y%m%d-%H%M%S')}.log")

# ---------------------------
# PFX Inspection
# ---------------------------

_WINDOWS_ATTRIBUTE_NAMES = {
    NameOID.COMMON_NAME: "CN",
    NameOID.ORGANIZATION_NAME: "O",
    NameOID.ORGANIZATIONAL_UNIT_NAME: "OU",
    NameOID.LOCALITY_NAME: "L",
    NameOID.STATE_OR_PROVINCE_NAME: "S",
    NameOID.COUNTRY_NAME: "C",
    NameOID.EMAIL_ADDRESS: "E",
    NameOID.DOMAIN_COMPONENT: "DC",
}


@dataclass(frozen=True)
class PfxSummary:
    """What the PFX will put into the store."""
    thumbprint: str
    subject: str
    common_name: str
    not_before: datetime.datetime
    not_after: datetime.datetime
    chain_length: int = 1

    def as_record(self) -> CertificateRecord:
        return CertificateRecord(
            thumbprint=self.thumbprint,
            subject=self.subject,
            not_before=self.not_before,
            not_after=self.not_after,
            has_private_key=True,
        )


class PfxInspector:
    """Read a PKCS#12 bundle before handing it to the certificate store."""

    @staticmethod
    def load_file(path: str) -> bytes:
        """Load file content with validation."""
        file_path = Path(path)

        if not file_path.exists():
            raise CertificateError(f"File not found: {path}")

        if not file_path.is_file():
            raise CertificateError(f"Path is not a file: {path}")

        try:
            data = file_path.read_bytes()
        except OSError as e:
            raise CertificateError(f"Failed to read file {path}: {e}")

        if not data:
            raise CertificateError(f"File is empty: {path}")

        return data

    @staticmethod
    def inspect(path: str, password: Optional[str]) -> PfxSummary:
        """Open the PFX with its password and summarize the leaf certificate."""
        data = PfxInspector.load_file(path)
        secret = password.encode("utf-8") if password else None

        try:
            key, cert, extra = pkcs12.load_key_and_certificates(data, secret)
        except (ValueError, TypeError) as e:
            raise CertificateError(f"Could not open PFX {path}: wrong password or malformed file ({e})")

        if cert is None:
            raise CertificateError(f"PFX contains no certificate: {path}")
        if key is None:
            raise CertificateError(f"PFX contains no private key: {path}")

        return PfxSummary(
            thumbprint=PfxInspector.thumbprint(cert),
            subject=PfxInspector.windows_subject(cert),
            common_name=PfxInspector._extract_cn_or_san(cert),
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            chain_length=1 + len(extra or []),
        )

    @staticmethod
    def thumbprint(cert: "x509.Certificate") -> str:
        """SHA-1 of the DER encoding, the way Windows names certificates."""
        return cert.fingerprint(hashes.SHA1()).hex().upper()

    @staticmethod
    def windows_subject(cert: "x509.Certificate") -> str:
        """Render the subject most-specific first, as Get-ChildItem Cert: shows it."""
        parts = []
        for rdn in reversed(cert.subject.rdns):
            for attr in rdn:
                name = _WINDOWS_ATTRIBUTE_NAMES.get(attr.oid, attr.oid.dotted_string)
                parts.append(f"{name}={attr.value}")
        return ", ".join(parts)

    @staticmethod
    def _extract_cn_or_san(cert: "x509.Certificate") -> str:
        """Extract CN or first SAN from certificate."""
        for attr in cert.subject:
            if attr.oid == NameOID.COMMON_NAME:
                return attr.value

        try:
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
            dns_names = san.get_values_for_type(x509.DNSName)
            return dns_names[0] if dns_names else "(no CN/SAN)"
        except x509.ExtensionNotFound:
            return "(no CN/SAN)"

    @staticmethod
    def summarize(summary: PfxSummary, now: Optional[datetime.datetime] = None) -> str:
        """Human readable one-screen summary of the PFX."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        days_left = (summary.not_after - now).days

        if days_left < 0:
            expiry_info = f"EXPIRED {abs(days_left)} days ago"
        elif days_left == 0:
            expiry_info = "EXPIRES TODAY"
        elif days_left == 1:
            expiry_info = "expires tomorrow"
        elif days_left <= 30:
            expiry_info = f"expires in {days_left} days"
        else:
            expiry_info = f"expires {summary.not_after.strftime('%Y-%m-%d')} ({days_left} days)"

        lines = [
            "[*] PFX summary:",
            f"    subject:    {summary.subject}",
            f"    thumbprint: {summary.thumbprint}",
            f"    validity:   {summary.not_before.strftime('%Y-%m-%d')} - {expiry_info}",
            f"    chain:      {summary.chain_length} certificate(s)",
        ]
        return "\n".join(lines)

# ---------------------------
# PowerShell Runner
# ---------------------------

def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted literal."""
    # PowerShell also treats typographic single quotes as delimiters
    escaped = re.sub("(['\u2018\u2019\u201a\u201b])", r"\1\1", str(value))
    return f"'{escaped}'"


_PREAMBLE = """$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
trap { [Console]::Error.WriteLine($_.Exception.Message); exit 1 }
"""


class PowerShell:
    """Run Windows PowerShell snippets and decode their JSON output."""

    def __init__(self, logger: Optional[Logger] = None, timeout: int = 300,
                 executable: str = "powershell.exe"):
        self.logger = logger
        self.timeout = timeout
        self.executable = executable

    def _debug(self, msg: str, context: Optional[Dict[str, Any]] = None):
        if self.logger:
            self.logger.debug(msg, context=context)

    def command_line(self, script: str) -> List[str]:
        """Build the command line; the script travels base64 encoded as UTF-16LE."""
        encoded = base64.b64encode((_PREAMBLE + script).encode("utf-16-le")).decode("ascii")
        return [
            self.executable,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy", "Bypass",
            "-EncodedCommand", encoded,
        ]

    def run(self, script: str, env: Optional[Dict[str, str]] = None) -> Any:
        """Run ``script`` and return its JSON output decoded (None when silent)."""
        child_env = dict(os.environ)
        if env:
            child_env.update(env)

        self._debug("PowerShell call", context={"script": script.strip()})

        try:
            proc = subprocess.run(
                self.command_line(script),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=child_env,
            )
        except FileNotFoundError as e:
            raise PowerShellError(f"PowerShell not found: {self.executable}") from e
        except subprocess.TimeoutExpired as e:
            raise PowerShellError(f"PowerShell call timed out after {self.timeout}s") from e

        if proc.returncode != 0:
            message = (proc.stderr or "").strip() or (proc.stdout or "").strip() or f"exit code {proc.returncode}"
            self._debug(f"PowerShell call failed (exit {proc.returncode})", context={"stderr": proc.stderr})
            raise PowerShellError(message)

        out = (proc.stdout or "").strip().lstrip("\ufeff")
        if not out:
            return None

        try:
            return json.loads(out)
        except ValueError as e:
            raise PowerShellError(f"Unexpected PowerShell output: {out[:200]}") from e

# ---------------------------
# Certificate Store
# ---------------------------

class CertificateStore(ABC):
    """The machine certificate store, reduced to what the reconciler needs."""

    @abstractmethod
    def list_certificates(self) -> List[CertificateRecord]:
        """Every certificate in the store."""

    @abstractmethod
    def import_pfx(self, path: str, password: Optional[str]) -> List[CertificateRecord]:
        """Import a PFX, private key marked exportable."""

    @abstractmethod
    def delete_by_thumbprint(self, thumbprint: str) -> None:
        """Delete a certificate together with its private key."""

    def find_by_subject_prefix(self, prefix: str) -> List[CertificateRecord]:
        """Certificates whose subject starts with ``prefix``."""
        return [record for record in self.list_certificates() if subject_matches(record.subject, prefix)]


def _parse_ps_datetime(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        parsed = datetime.datetime.strptime(value, "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return None
    return parsed.replace(tzinfo=datetime.timezone.utc)


def _as_list(data: Any) -> List[Any]:
    """ConvertTo-Json collapses one-element arrays; undo that."""
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]


_CERT_SELECT = (
    "Select-Object Thumbprint, Subject, HasPrivateKey, "
    "@{n='NotBefore';e={$_.NotBefore.ToUniversalTime().ToString('yyyy-MM-ddTHH:mm:ss')}}, "
    "@{n='NotAfter';e={$_.NotAfter.ToUniversalTime().ToString('yyyy-MM-ddTHH:mm:ss')}}"
)


class PowerShellCertificateStore(CertificateStore):
    """``Cert:\\LocalMachine\\My`` driven through PowerShell."""

    def __init__(self, powershell: PowerShell, location: str = CERT_STORE_LOCATION):
        self.powershell = powershell
        self.location = location

    @staticmethod
    def _record(item: Dict[str, Any]) -> CertificateRecord:
        return CertificateRecord(
            thumbprint=normalize_thumbprint(item.get("Thumbprint", "")),
            subject=item.get("Subject") or "",
            not_before=_parse_ps_datetime(item.get("NotBefore")),
            not_after=_parse_ps_datetime(item.get("NotAfter")),
            has_private_key=bool(item.get("HasPrivateKey")),
        )

    def _cert_path(self, thumbprint: str) -> str:
        thumbprint = normalize_thumbprint(thumbprint)
        if not _THUMBPRINT_RE.match(thumbprint):
            raise StoreError(f"Invalid thumbprint: {thumbprint!r}")
        return f"{self.location}\\{thumbprint}"

    def list_certificates(self) -> List[CertificateRecord]:
        """List certificates in the store."""
        script = (
            f"$items = @(Get-ChildItem -Path {ps_quote(self.location)} | {_CERT_SELECT})\n"
            "ConvertTo-Json -InputObject $items -Depth 2 -Compress\n"
        )
        data = self.powershell.run(script)
        return [self._record(item) for item in _as_list(data) if isinstance(item, dict)]

    def import_pfx(self, path: str, password: Optional[str]) -> List[CertificateRecord]:
        """Import a PFX into the store with Import-PfxCertificate."""
        if not Path(path).is_file():
            raise StoreError(f"PFX file not found: {path}")

        env = None
        if password:
            env = {_SECRET_ENV: password}
            password_arg = (
                f" -Password (ConvertTo-SecureString -String $env:{_SECRET_ENV} -AsPlainText -Force)"
            )
        else:
            password_arg = ""

        script = (
            f"$certs = @(Import-PfxCertificate -FilePath {ps_quote(path)} "
            f"-CertStoreLocation {ps_quote(self.location)} -Exportable{password_arg} | {_CERT_SELECT})\n"
            "ConvertTo-Json -InputObject $certs -Depth 2 -Compress\n"
        )
        data = self.powershell.run(script, env=env)
        return [self._record(item) for item in _as_list(data) if isinstance(item, dict)]

    def delete_by_thumbprint(self, thumbprint: str) -> None:
        """Delete a certificate and its private key."""
        script = f"Remove-Item -Path {ps_quote(self._cert_path(thumbprint))} -DeleteKey\n"
        self.powershell.run(script)


class MemoryCertificateStore(CertificateStore):
    """In-memory certificate store.

    ``pfx_files`` maps a PFX path to the record importing it produces and,
    optionally, ``pfx_passwords`` maps the same path to the password it
    needs.
    """

    def __init__(self, records: Optional[List[CertificateRecord]] = None,
                 pfx_files: Optional[Dict[str, CertificateRecord]] = None,
                 pfx_passwords: Optional[Dict[str, str]] = None):
        self.records: Dict[str, CertificateRecord] = {}
        for record in records or []:
            self.records[normalize_thumbprint(record.thumbprint)] = record
        self.pfx_files = dict(pfx_files or {})
        self.pfx_passwords = dict(pfx_passwords or {})
        self.deleted: List[str] = []

    def list_certificates(self) -> List[CertificateRecord]:
        return list(self.records.values())

    def import_pfx(self, path: str, password: Optional[str]) -> List[CertificateRecord]:
        if path not in self.pfx_files:
            raise StoreError(f"PFX file not found: {path}")
        expected = self.pfx_passwords.get(path)
        if expected is not None and password != expected:
            raise StoreError("The specified network password is not correct.")
        record = self.pfx_files[path]
        self.records[normalize_thumbprint(record.thumbprint)] = record
        return [record]

    def delete_by_thumbprint(self, thumbprint: str) -> None:
        key = normalize_thumbprint(thumbprint)
        if key not in self.records:
            raise StoreError(f"Cannot find path '{CERT_STORE_LOCATION}\\{key}' because it does not exist.")
        del self.records[key]
        self.deleted.append(key)

# ---------------------------
# Binding Store
# ---------------------------

class BindingStore(ABC):
    """IIS configuration: site bindings plus the HTTP.sys SSL bindings."""

    def load_module(self) -> None:
        """Make the administration tooling available; raise ModuleLoadError if it is not."""

    @abstractmethod
    def find_binding(self, spec: BindingSpec) -> Optional[SiteBinding]:
        """The site's https binding at the slot's ip:port:host, if any."""

    @abstractmethod
    def remove_binding(self, spec: BindingSpec) -> None:
        """Remove the site's https binding at the slot's ip:port:host."""

    @abstractmethod
    def create_binding(self, spec: BindingSpec) -> None:
        """Add an https binding at the slot's ip:port:host."""

    @abstractmethod
    def find_ssl_binding(self, spec: BindingSpec) -> Optional[str]:
        """Thumbprint of the SSL binding at the slot's ip:port:host, if any."""

    @abstractmethod
    def remove_ssl_binding(self, spec: BindingSpec) -> None:
        """Remove the SSL binding at the slot's ip:port:host."""

    @abstractmethod
    def bind_certificate(self, spec: BindingSpec, thumbprint: str) -> None:
        """Associate the slot's ip:port:host with a certificate."""


_WEB_ADMINISTRATION = "Import-Module WebAdministration\n"


class IISBindingStore(BindingStore):
    """IIS bindings through the WebAdministration PowerShell module."""

    def __init__(self, powershell: PowerShell, cert_location: str = CERT_STORE_LOCATION):
        self.powershell = powershell
        self.cert_location = cert_location

    def _run(self, script: str) -> Any:
        return self.powershell.run(_WEB_ADMINISTRATION + script)

    def _ssl_path(self, spec: BindingSpec) -> str:
        return f"{SSL_BINDINGS_PATH}\\{spec.ssl_binding_key}"

    def load_module(self) -> None:
        """Import WebAdministration once to find out whether it is there."""
        try:
            self.powershell.run(_WEB_ADMINISTRATION)
        except PowerShellError as e:
            raise ModuleLoadError(f"WebAdministration module unavailable: {e}") from e

    def find_binding(self, spec: BindingSpec) -> Optional[SiteBinding]:
        """Look up the https binding matching the slot's binding information."""
        script = (
            f"$items = @(Get-WebBinding -Name {ps_quote(spec.site)} -Protocol 'https' | "
            "Select-Object protocol, bindingInformation, sslFlags)\n"
            "ConvertTo-Json -InputObject $items -Compress\n"
        )
        wanted = spec.binding_information.casefold()
        for item in _as_list(self._run(script)):
            if not isinstance(item, dict):
                continue
            if str(item.get("bindingInformation", "")).casefold() == wanted:
                return SiteBinding(
                    protocol=item.get("protocol") or "https",
                    binding_information=item.get("bindingInformation"),
                    ssl_flags=int(item.get("sslFlags") or 0),
                )
        return None

    def remove_binding(self, spec: BindingSpec) -> None:
        """Remove the https binding with Remove-WebBinding."""
        script = (
            f"Remove-WebBinding -Name {ps_quote(spec.site)} -Protocol 'https' "
            f"-BindingInformation {ps_quote(spec.binding_information)}\n"
        )
        self._run(script)

    def create_binding(self, spec: BindingSpec) -> None:
        """Add the https binding with New-WebBinding."""
        host_arg = f" -HostHeader {ps_quote(spec.host_header)}" if spec.has_host_header else ""
        script = (
            f"New-WebBinding -Name {ps_quote(spec.site)} -Protocol 'https' "
            f"-IPAddress {ps_quote(spec.ip)} -Port {int(spec.port)}{host_arg} -SslFlags {spec.ssl_flags}\n"
        )
        self._run(script)

    def find_ssl_binding(self, spec: BindingSpec) -> Optional[str]:
        """Read the thumbprint of the SSL binding, if one exists."""
        path = ps_quote(self._ssl_path(spec))
        script = (
            f"if (Test-Path -Path {path}) {{\n"
            f"    $b = Get-Item -Path {path}\n"
            "    ConvertTo-Json -InputObject ([string]$b.Thumbprint) -Compress\n"
            "}\n"
        )
        data = self._run(script)
        if data is None:
            return None
        return normalize_thumbprint(str(data)) or None

    def remove_ssl_binding(self, spec: BindingSpec) -> None:
        """Delete the SSL binding."""
        self._run(f"Remove-Item -Path {ps_quote(self._ssl_path(spec))}\n")

    def bind_certificate(self, spec: BindingSpec, thumbprint: str) -> None:
        """Create the SSL binding for ``thumbprint``."""
        thumbprint = normalize_thumbprint(thumbprint)
        if not _THUMBPRINT_RE.match(thumbprint):
            raise StoreError(f"Invalid thumbprint: {thumbprint!r}")
        cert_path = f"{self.cert_location}\\{thumbprint}"
        script = (
            f"Get-Item -Path {ps_quote(cert_path)} | "
            f"New-Item -Path {ps_quote(self._ssl_path(spec))} -SSLFlags {spec.ssl_flags} | Out-Null\n"
        )
        self._run(script)


class MemoryBindingStore(BindingStore):
    """In-memory IIS configuration with IIS-like failure behaviour."""

    def __init__(self, sites: Optional[List[str]] = None,
                 bindings: Optional[Dict[str, List[SiteBinding]]] = None,
                 ssl_bindings: Optional[Dict[str, str]] = None,
                 module_available: bool = True):
        self.sites = set(sites or [DEFAULT_SITE])
        self.bindings: Dict[str, List[SiteBinding]] = {k: list(v) for k, v in (bindings or {}).items()}
        self.sites.update(self.bindings)
        self.ssl_bindings: Dict[str, str] = {k: normalize_thumbprint(v) for k, v in (ssl_bindings or {}).items()}
        self.module_available = module_available

    def load_module(self) -> None:
        if not self.module_available:
            raise ModuleLoadError("The specified module 'WebAdministration' was not loaded")

    def _site_bindings(self, spec: BindingSpec) -> List[SiteBinding]:
        if spec.site not in self.sites:
            raise StoreError(f"Site '{spec.site}' does not exist")
        return self.bindings.setdefault(spec.site, [])

    def find_binding(self, spec: BindingSpec) -> Optional[SiteBinding]:
        wanted = spec.binding_information.casefold()
        for binding in self.bindings.get(spec.site, []):
            if binding.protocol == "https" and binding.binding_information.casefold() == wanted:
                return binding
        return None

    def remove_binding(self, spec: BindingSpec) -> None:
        binding = self.find_binding(spec)
        if binding is None:
            raise StoreError(f"No https binding {spec.binding_information} on site '{spec.site}'")
        self.bindings[spec.site].remove(binding)

    def create_binding(self, spec: BindingSpec) -> None:
        bindings = self._site_bindings(spec)
        if spec.sni and not spec.host_header:
            raise StoreError("SNI requires a host header")
        if self.find_binding(spec) is not None:
            raise StoreError("Cannot add duplicate collection entry of type 'binding'")
        bindings.append(SiteBinding("https", spec.binding_information, spec.ssl_flags))

    def find_ssl_binding(self, spec: BindingSpec) -> Optional[str]:
        return self.ssl_bindings.get(spec.ssl_binding_key)

    def remove_ssl_binding(self, spec: BindingSpec) -> None:
        if spec.ssl_binding_key not in self.ssl_bindings:
            raise StoreError(f"Cannot find path '{SSL_BINDINGS_PATH}\\{spec.ssl_binding_key}'")
        del self.ssl_bindings[spec.ssl_binding_key]

    def bind_certificate(self, spec: BindingSpec, thumbprint: str) -> None:
        if spec.ssl_binding_key in self.ssl_bindings:
            raise StoreError("Cannot create a file when that file already exists")
        self.ssl_bindings[spec.ssl_binding_key] = normalize_thumbprint(thumbprint)

# ---------------------------
# Run Report
# ---------------------------

class StepStatus(Enum):
    """Outcome of one reconciliation step."""
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"
    DRY_RUN = "dry_run"


class FailureKind(Enum):
    """Why a step failed."""
    MODULE_LOAD = "module_load"
    LOOKUP_AMBIGUOUS = "lookup_ambiguous"
    LOOKUP_FAILED = "lookup_failed"
    IMPORT = "import"
    BINDING_REMOVAL = "binding_removal"
    BINDING_CREATION = "binding_creation"
    DELETE = "delete"


MUTATING_STEPS = frozenset([
    "import", "remove_binding", "remove_ssl_binding",
    "create_binding", "bind_certificate", "delete_old",
])


@dataclass
class StepResult:
    """One step's outcome; ``value`` carries data later steps depend on."""
    step: str
    status: StepStatus
    detail: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    failure: Optional[FailureKind] = None
    value: Any = None

    @property
    def succeeded(self) -> bool:
        return self.status in (StepStatus.OK, StepStatus.DRY_RUN)

    def to_dict(self) -> Dict[str, Any]:
        result = {"step": self.step, "status": self.status.value}
        if self.detail:
            result["detail"] = self.detail
        if self.error:
            result["error"] = self.error
        if self.failure:
            result["failure"] = self.failure.value
        return result


@dataclass
class RunReport:
    """Everything one reconciliation run did."""
    request: ReconciliationRequest
    dry_run: bool = False
    steps: List[StepResult] = field(default_factory=list)
    old_thumbprint: Optional[str] = None
    new_thumbprint: Optional[str] = None

    def add(self, result: StepResult) -> StepResult:
        self.steps.append(result)
        return result

    def step(self, name: str) -> Optional[StepResult]:
        for result in self.steps:
            if result.step == name:
                return result
        return None

    @property
    def failures(self) -> List[StepResult]:
        return [s for s in self.steps if s.status is StepStatus.FAILED]

    @property
    def status(self) -> str:
        """ok, dry_run, partial (some failures after a change) or failed."""
        if not self.failures:
            return "dry_run" if self.dry_run else "ok"
        changed = any(s.status is StepStatus.OK and s.step in MUTATING_STEPS for s in self.steps)
        return "partial" if changed else "failed"

    @property
    def exit_code(self) -> int:
        return {"ok": 0, "dry_run": 0, "partial": 2, "failed": 3}[self.status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "request": self.request.to_dict(),
            "old_thumbprint": self.old_thumbprint,
            "new_thumbprint": self.new_thumbprint,
            "steps": [s.to_dict() for s in self.steps],
            "version": VERSION,
        }

# ---------------------------
# Certificate Reconciler
# ---------------------------

class CertificateReconciler:
    """Swap the certificate behind one IIS binding slot.

    The run is best effort: every step is guarded, its outcome lands in the
    RunReport, and later steps read only the results they depend on.
    """

    def __init__(self, cert_store: CertificateStore, binding_store: BindingStore,
                 context: RunContext, logger: Logger, dry_run: bool = False):
        self.cert_store = cert_store
        self.binding_store = binding_store
        self.context = context
        self.logger = logger
        self.dry_run = dry_run

    # Lookups

    def candidates(self, request: ReconciliationRequest,
                   exclude_thumbprint: Optional[str] = None) -> List[CertificateRecord]:
        """Store records matching the request's subject filter."""
        records = self.cert_store.find_by_subject_prefix(request.subject_prefix)
        return [r for r in records if self._eligible(request, r, exclude_thumbprint)]

    def _eligible(self, request: ReconciliationRequest, record: CertificateRecord,
                  exclude_thumbprint: Optional[str] = None) -> bool:
        if not subject_matches(record.subject, request.subject_prefix):
            return False
        if exclude_thumbprint and normalize_thumbprint(record.thumbprint) == normalize_thumbprint(exclude_thumbprint):
            return False
        if request.exclude_local_server_cert and self.context.is_local_server_subject(record.subject):
            self.logger.debug(f"Ignoring local server certificate {record.thumbprint} ({record.subject})")
            return False
        return True

    def locate(self, request: ReconciliationRequest,
               exclude_thumbprint: Optional[str] = None) -> Optional[CertificateRecord]:
        """The single matching certificate, or None when there are zero or several."""
        return self._single(request, self.candidates(request, exclude_thumbprint))

    def _single(self, request: ReconciliationRequest,
                matches: List[CertificateRecord]) -> Optional[CertificateRecord]:
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            thumbprints = ", ".join(m.thumbprint for m in matches)
            self.logger.warn(
                f"Subject filter '{request.subject_prefix}' matched {len(matches)} certificates "
                f"({thumbprints}); treating as no match. Use a more specific subject.",
                also_stdout=True,
            )
        return None

    # Step plumbing

    def _attempt(self, report: RunReport, step: str, failure: FailureKind, action, *args) -> StepResult:
        """Run one step; any exception becomes a failed StepResult."""
        try:
            result = action(*args)
        except Exception as e:
            result = StepResult(step, StepStatus.FAILED, error=str(e), failure=failure)
        report.add(result)
        self._log_step(result)
        return result

    def _skip(self, report: RunReport, step: str, reason: str) -> StepResult:
        result = report.add(StepResult(step, StepStatus.SKIPPED, detail={"reason": reason}))
        self._log_step(result)
        return result

    def _log_step(self, result: StepResult):
        if result.status is StepStatus.FAILED:
            kind = result.failure.value if result.failure else "error"
            self.logger.error(f"{result.step}: failed ({kind}): {result.error}", also_stdout=True)
        elif result.status is StepStatus.SKIPPED:
            self.logger.info(f"{result.step}: skipped ({result.detail.get('reason', '')})")
        else:
            self.logger.info(f"{result.step}: {result.status.value}", context=result.detail)

    # Steps

    def _load_module(self) -> StepResult:
        self.binding_store.load_module()
        return StepResult("load_module", StepStatus.OK)

    def _locate_old(self, request: ReconciliationRequest) -> StepResult:
        try:
            record = self.locate(request)
        except StoreError as e:
            return StepResult("locate_old", StepStatus.FAILED, error=str(e), failure=FailureKind.LOOKUP_FAILED)
        if record is None:
            self.logger.info(f"No unambiguous existing certificate for '{request.subject_prefix}'", also_stdout=True)
            return StepResult("locate_old", StepStatus.OK, detail={"thumbprint": None})
        self.logger.info(f"Existing certificate: {record.thumbprint} ({record.subject})", also_stdout=True)
        return StepResult("locate_old", StepStatus.OK, detail={"thumbprint": record.thumbprint}, value=record)

    def _import(self, request: ReconciliationRequest) -> StepResult:
        if self.dry_run:
            self.logger.info(f"DRYRUN: would import {request.pfx_path} into {CERT_STORE_LOCATION}", also_stdout=True)
            return StepResult("import", StepStatus.DRY_RUN, detail={"pfx": request.pfx_path})
        imported = self.cert_store.import_pfx(request.pfx_path, request.password)
        return StepResult(
            "import", StepStatus.OK,
            detail={"pfx": request.pfx_path, "imported": [r.thumbprint for r in imported]},
        )

    def _locate_new(self, request: ReconciliationRequest, old: Optional[CertificateRecord],
                    pfx_summary: Optional[PfxSummary]) -> StepResult:
        old_thumbprint = old.thumbprint if old else None

        if self.dry_run:
            if pfx_summary is None:
                return StepResult("locate_new", StepStatus.FAILED, failure=FailureKind.LOOKUP_AMBIGUOUS,
                                  error="dry run cannot predict the new certificate without a readable PFX")
            # The store after import: what it holds now plus the PFX certificate
            matches = self.candidates(request, exclude_thumbprint=old_thumbprint)
            predicted = pfx_summary.as_record()
            present = {normalize_thumbprint(m.thumbprint) for m in matches}
            if (normalize_thumbprint(predicted.thumbprint) not in present
                    and self._eligible(request, predicted, old_thumbprint)):
                matches.append(predicted)

            record = self._single(request, matches)
            if record is None:
                return StepResult("locate_new", StepStatus.FAILED, failure=FailureKind.LOOKUP_AMBIGUOUS,
                                  error=f"no unambiguous new certificate for '{request.subject_prefix}' "
                                        f"would remain after import")
            if normalize_thumbprint(record.thumbprint) != normalize_thumbprint(predicted.thumbprint):
                self.logger.warn(
                    f"Located certificate {record.thumbprint} is not the one in the PFX ({predicted.thumbprint})",
                    also_stdout=True,
                )
            self.logger.info(f"DRYRUN: new certificate would be {record.thumbprint} ({record.subject})",
                             also_stdout=True)
            return StepResult("locate_new", StepStatus.DRY_RUN,
                              detail={"thumbprint": record.thumbprint}, value=record)

        record = self.locate(request, exclude_thumbprint=old_thumbprint)
        if record is None:
            return StepResult("locate_new", StepStatus.FAILED, failure=FailureKind.LOOKUP_AMBIGUOUS,
                              error=f"no unambiguous new certificate for '{request.subject_prefix}'")

        if pfx_summary and normalize_thumbprint(record.thumbprint) != pfx_summary.thumbprint:
            self.logger.warn(
                f"Located certificate {record.thumbprint} is not the one in the PFX ({pfx_summary.thumbprint})",
                also_stdout=True,
            )
        self.logger.info(f"New certificate: {record.thumbprint} ({record.subject})", also_stdout=True)
        return StepResult("locate_new", StepStatus.OK, detail={"thumbprint": record.thumbprint}, value=record)

    def _remove_binding(self, spec: BindingSpec) -> StepResult:
        existing = self.binding_store.find_binding(spec)
        detail = {"site": spec.site, "binding": spec.binding_information}
        if existing is None:
            return StepResult("remove_binding", StepStatus.SKIPPED, detail={**detail, "reason": "no binding"})
        if self.dry_run:
            self.logger.info(f"DRYRUN: would remove https binding {spec.binding_information} from '{spec.site}'")
            return StepResult("remove_binding", StepStatus.DRY_RUN, detail=detail)
        self.binding_store.remove_binding(spec)
        return StepResult("remove_binding", StepStatus.OK, detail=detail)

    def _remove_ssl_binding(self, spec: BindingSpec) -> StepResult:
        thumbprint = self.binding_store.find_ssl_binding(spec)
        detail = {"key": spec.ssl_binding_key}
        if thumbprint is None:
            return StepResult("remove_ssl_binding", StepStatus.SKIPPED, detail={**detail, "reason": "no ssl binding"})
        detail["thumbprint"] = thumbprint
        if self.dry_run:
            self.logger.info(f"DRYRUN: would remove SSL binding {spec.ssl_binding_key} ({thumbprint})")
            return StepResult("remove_ssl_binding", StepStatus.DRY_RUN, detail=detail)
        self.binding_store.remove_ssl_binding(spec)
        return StepResult("remove_ssl_binding", StepStatus.OK, detail=detail)

    def _create_binding(self, spec: BindingSpec) -> StepResult:
        detail = {"site": spec.site, "binding": spec.binding_information, "sni": spec.sni}
        if self.dry_run:
            self.logger.info(f"DRYRUN: would add https binding {spec.binding_information} to '{spec.site}'")
            return StepResult("create_binding", StepStatus.DRY_RUN, detail=detail)
        self.binding_store.create_binding(spec)
        return StepResult("create_binding", StepStatus.OK, detail=detail)

    def _bind_certificate(self, spec: BindingSpec, record: CertificateRecord) -> StepResult:
        detail = {"key": spec.ssl_binding_key, "thumbprint": record.thumbprint}
        if self.dry_run:
            self.logger.info(f"DRYRUN: would bind {record.thumbprint} at {spec.ssl_binding_key}")
            return StepResult("bind_certificate", StepStatus.DRY_RUN, detail=detail)
        self.binding_store.bind_certificate(spec, record.thumbprint)
        return StepResult("bind_certificate", StepStatus.OK, detail=detail)

    def _delete_old(self, record: CertificateRecord) -> StepResult:
        detail = {"thumbprint": record.thumbprint}
        if self.dry_run:
            self.logger.info(f"DRYRUN: would delete certificate {record.thumbprint}")
            return StepResult("delete_old", StepStatus.DRY_RUN, detail=detail)
        self.cert_store.delete_by_thumbprint(record.thumbprint)
        return StepResult("delete_old", StepStatus.OK, detail=detail)

    # Pipeline

    def run(self, request: ReconciliationRequest, pfx_summary: Optional[PfxSummary] = None) -> RunReport:
        """Reconcile the store and the binding with ``request``. Never raises."""
        report = RunReport(request=request, dry_run=self.dry_run)
        spec = request.binding
        self.logger.info(f"Reconciling {request.to_dict()}")

        self._attempt(report, "load_module", FailureKind.MODULE_LOAD, self._load_module)

        old_step = self._attempt(report, "locate_old", FailureKind.LOOKUP_FAILED, self._locate_old, request)
        old: Optional[CertificateRecord] = old_step.value
        report.old_thumbprint = old.thumbprint if old else None

        new: Optional[CertificateRecord] = None
        if request.is_removal:
            self._skip(report, "import", "removal request")
            self._skip(report, "locate_new", "removal request")
        else:
            import_step = self._attempt(report, "import", FailureKind.IMPORT, self._import, request)
            if import_step.succeeded:
                new_step = self._attempt(report, "locate_new", FailureKind.LOOKUP_FAILED,
                                         self._locate_new, request, old, pfx_summary)
                new = new_step.value
            else:
                self._skip(report, "locate_new", "import failed")
        report.new_thumbprint = new.thumbprint if new else None

        if new is not None or request.is_removal:
            self._attempt(report, "remove_binding", FailureKind.BINDING_REMOVAL, self._remove_binding, spec)
            self._attempt(report, "remove_ssl_binding", FailureKind.BINDING_REMOVAL, self._remove_ssl_binding, spec)
        else:
            self._skip(report, "remove_binding", "no new certificate")
            self._skip(report, "remove_ssl_binding", "no new certificate")

        bound = False
        if new is not None:
            self._attempt(report, "create_binding", FailureKind.BINDING_CREATION, self._create_binding, spec)
            bind_step = self._attempt(report, "bind_certificate", FailureKind.BINDING_CREATION,
                                      self._bind_certificate, spec, new)
            bound = bind_step.succeeded
        else:
            reason = "removal request" if request.is_removal else "no new certificate"
            self._skip(report, "create_binding", reason)
            self._skip(report, "bind_certificate", reason)

        if old is None:
            self._skip(report, "delete_old", "no old certificate")
        elif bound or request.is_removal:
            self._attempt(report, "delete_old", FailureKind.DELETE, self._delete_old, old)
        else:
            self._skip(report, "delete_old", "replacement binding not in place")

        self._log_summary(report)
        return report

    def _log_summary(self, report: RunReport):
        marks = []
        for result in report.steps:
            if result.status is StepStatus.SKIPPED:
                continue
            marks.append(f"{result.step}{'✗' if result.status is StepStatus.FAILED else '✓'}")
        message = f"Reconciliation {report.status}: {' | '.join(marks)}"
        if report.failures:
            self.logger.warn(message)
        else:
            self.logger.info(message)

# ---------------------------
# Configuration Management
# ---------------------------

class ConfigManager:
    """Handle configuration loading and validation."""

    @staticmethod
    def load_yaml_config(path: Optional[str]) -> Dict[str, Any]:
        """Load YAML configuration file."""
        if not path:
            return {}

        if yml is None:
            raise ConfigurationError(
                "YAML config requested but PyYAML is not installed.\n"
                "    pip:  pip3 install pyyaml"
            )

        config_path = Path(path).expanduser().resolve()

        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config = yml.safe_load(f) or {}
        except (OSError, yml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config file {path}: {e}")

        if not isinstance(config, dict):
            raise ConfigurationError("Config file must contain a YAML dictionary")

        # Accept both host-header and host_header spellings
        return {str(k).replace("-", "_"): v for k, v in config.items()}

    @staticmethod
    def merge_args_with_config(args: argparse.Namespace, cfg: Dict[str, Any]) -> Config:
        """Merge CLI arguments with config file (CLI wins), then the password environment."""
        exclude_keys = {"config", "pfx_option"}

        args_dict = {}
        for key, value in vars(args).items():
            if key in exclude_keys or value is None:
                continue
            args_dict[key] = value

        # --pfx and the positional argument name the same file
        pfx_option = getattr(args, "pfx_option", None)
        if pfx_option:
            args_dict["pfx"] = pfx_option

        merged = {**cfg, **args_dict}

        if merged.get("password") is None and os.environ.get(PASSWORD_ENV):
            merged["password"] = os.environ[PASSWORD_ENV]

        valid_keys = set(Config.__annotations__.keys())
        unknown_keys = set(merged.keys()) - valid_keys
        if unknown_keys:
            print(f"[!] Warning: Unknown config keys ignored: {', '.join(sorted(unknown_keys))}")
            merged = {k: v for k, v in merged.items() if k in valid_keys}

        try:
            return Config(**merged)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(str(e))

# ---------------------------
# Main Application
# ---------------------------

class IISCertSwap:
    """Main application class."""

    def __init__(self, cert_store: Optional[CertificateStore] = None,
                 binding_store: Optional[BindingStore] = None,
                 context: Optional[RunContext] = None):
        self.logger: Optional[Logger] = None
        self.config: Optional[Config] = None
        self.cert_store = cert_store
        self.binding_store = binding_store
        self.context = context

    def build_parser(self) -> argparse.ArgumentParser:
        """Build the command line parser."""
        parser = argparse.ArgumentParser(
            prog="iis-cert-swap",
            description="Install or replace a certificate in the machine store and rebind it to an IIS site.",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog=f"The PFX password may also come from the {PASSWORD_ENV} environment variable.",
        )

        # Certificate settings
        parser.add_argument("pfx", nargs="?", help=f"PFX file (default: {DEFAULT_PFX_NAME} beside the executable)")
        parser.add_argument("--pfx", dest="pfx_option", metavar="PATH", help="PFX file, same as the positional argument")
        parser.add_argument("-s", "--subject", help="Subject prefix of the certificate, e.g. example.com or CN=example.com")
        parser.add_argument("-p", "--password", help="PFX password")
        parser.add_argument("--exclude-local-server-cert", dest="exclude_local_server_cert",
                            action=argparse.BooleanOptionalAction, default=None,
                            help="Ignore the machine's own CN=<computer name> certificate (default: on)")

        # Binding settings
        parser.add_argument("--site", help=f"IIS site name (default: {DEFAULT_SITE})")
        parser.add_argument("--ip", help=f"Bind IP address (default: {WILDCARD_IP}, all unassigned)")
        parser.add_argument("--port", type=int, help=f"HTTPS port (default: {DEFAULT_PORT})")
        parser.add_argument("--host-header", dest="host_header", help="Host header (default: none)")
        parser.add_argument("--sni", action=argparse.BooleanOptionalAction, default=None,
                            help="Require Server Name Indication (needs --host-header)")

        # Behavior settings
        parser.add_argument("--remove", action="store_true", default=None,
                            help="Remove the binding and delete the matching certificate; no import")
        parser.add_argument("--dry-run", dest="dry_run", action="store_true", default=None,
                            help="Do not change anything; show planned actions")
        parser.add_argument("--powershell-timeout", dest="powershell_timeout", type=int,
                            help="Seconds allowed per PowerShell call (default: 300)")

        # Configuration
        parser.add_argument("-C", "--config", help="YAML config file")

        # Logging
        parser.add_argument("--log", help="Transcript log file (default: timestamped file in the log directory)")
        parser.add_argument("--log-level", dest="log_level", choices=["standard", "debug"],
                            help="Log verbosity (default: standard)")

        return parser

    def parse_arguments(self, argv: Optional[List[str]] = None) -> argparse.Namespace:
        """Parse command line arguments."""
        return self.build_parser().parse_args(argv)

    def setup_logging(self, config: Config, context: RunContext):
        """Open the transcript log."""
        log_level = LogLevel.DEBUG if config.log_level == "debug" else LogLevel.STANDARD
        path = config.log or context.transcript_path()
        self.logger = Logger(path, log_level)
        self.logger.set_run_id(str(uuid.uuid4()))
        self.logger.add_secret(config.password)

    def print_effective_config(self, config: Config, context: RunContext):
        """Print effective configuration."""
        print("[*] Effective configuration:")
        print(f"    mode: {'remove' if config.remove else 'install'}")
        if not config.remove:
            print(f"    pfx: {config.pfx}")
            print(f"    password: {'<set>' if config.password else '<none>'}")
        print(f"    subject: {subject_filter(config.subject)}")
        print(f"    site: {config.site}")
        print(f"    binding: {config.binding.binding_information} (sni: {config.sni})")
        print(f"    exclude_local_server_cert: {config.exclude_local_server_cert}")
        print(f"    dry_run: {config.dry_run}")
        print(f"    machine: {context.machine_name}{' (task sequence)' if context.task_sequence else ''}")
        if self.logger and self.logger.path:
            print(f"    log: {self.logger.path}")
            print(f"    log_level: {config.log_level}")

    def inspect_pfx(self, config: Config) -> Optional[PfxSummary]:
        """Pre-flight read of the PFX; problems are reported, the store import decides."""
        try:
            summary = PfxInspector.inspect(config.pfx, config.password)
        except CertificateError as e:
            self.logger.warn(f"PFX pre-flight: {e}", also_stdout=True)
            return None

        print(PfxInspector.summarize(summary))
        self.logger.info(f"pfx subject={summary.subject} thumbprint={summary.thumbprint}")

        if not subject_matches(summary.subject, subject_filter(config.subject)):
            self.logger.warn(
                f"PFX subject '{summary.subject}' does not start with '{subject_filter(config.subject)}'; "
                "the new certificate will not be found after import",
                also_stdout=True,
            )
        if summary.not_after < datetime.datetime.now(datetime.timezone.utc):
            self.logger.warn(f"PFX certificate expired on {summary.not_after.strftime('%Y-%m-%d')}", also_stdout=True)
        return summary

    def build_reconciler(self, config: Config, context: RunContext) -> CertificateReconciler:
        """Wire the reconciler to the given stores, or to PowerShell-backed ones."""
        powershell = PowerShell(self.logger, timeout=config.powershell_timeout)
        cert_store = self.cert_store or PowerShellCertificateStore(powershell)
        binding_store = self.binding_store or IISBindingStore(powershell)
        return CertificateReconciler(cert_store, binding_store, context, self.logger, dry_run=config.dry_run)

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Main application entry point."""
        argv = sys.argv[1:] if argv is None else argv
        try:
            if not argv:
                self.build_parser().print_usage()
                return 0

            args = self.parse_arguments(argv)

            yaml_config = ConfigManager.load_yaml_config(args.config)
            self.config = ConfigManager.merge_args_with_config(args, yaml_config)

            context = self.context
            if context is None:
                probe = PowerShell(timeout=self.config.powershell_timeout) if os.name == "nt" else None
                context = RunContext.detect(probe)

            self.setup_logging(self.config, context)
            self.logger.info(f"iis-cert-swap {VERSION} on {context.machine_name}")

            if self.config.sni and not self.config.host_header:
                self.logger.warn("SNI is enabled without a host header; IIS will reject the binding", also_stdout=True)

            self.print_effective_config(self.config, context)

            summary = None
            if not self.config.remove:
                summary = self.inspect_pfx(self.config)

            reconciler = self.build_reconciler(self.config, context)
            report = reconciler.run(self.config.to_request(), pfx_summary=summary)

            print(json.dumps(report.to_dict(), indent=2))

            if report.failures:
                self.logger.error(f"Certificate operation finished with status {report.status}")
            else:
                self.logger.info("Certificate operation completed successfully")

            return report.exit_code

        except ConfigurationError as e:
            print(f"[!] Configuration error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Configuration error: {e}")
            return 1
        except KeyboardInterrupt:
            print("\n[!] Interrupted by user")
            return 130
        except Exception as e:
            print(f"[!] Unexpected error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Unexpected error: {e}")
            return 1
        finally:
            if self.logger:
                self.logger.close()


def main():
    """Main entry point."""
    app = IISCertSwap()
    return app.run()


if __name__ == "__main__":
    sys.exit(main())
