#!/usr/bin/env python3
"""macsigner - sign, notarize and package a macOS application bundle.

This module provides tools for:
1. Discovering every Mach-O image and nested bundle inside an unpacked
   application bundle, in the bottom-up order required by nested signatures
2. Resolving per-artifact entitlements and launch constraints from a
   declarative YAML signing configuration
3. Signing, verifying and notarizing the bundle
4. Building and signing the distributable disk image

Usage (CLI):
    # Sign a bundle in place using its embedded signing configuration
    macsigner sign "Rancher Desktop.app"

    # Full release: sign, verify, notarize, build the DMG
    macsigner release dist/ --app "Rancher Desktop.app"

Usage (API):
    from macsigner import Codesigner, load_signing_config, sign_release

    config = load_signing_config("signing-config-mac.yaml")
    signer = Codesigner("MyApp.app", identity="ABCDEF...", config=config,
                        plists_dir="/tmp/plists")
    signer.process()

    dmg = sign_release("dist/")

Environment Variables:
    CSC_FINGERPRINT: signing certificate fingerprint (required)
    APPLEID, AC_PASSWORD, AC_TEAMID: notarization credentials
    M1: when set, package for arm64 instead of x86_64
"""

import argparse
import base64
import copy
import datetime
import enum
import hashlib
import itertools
import logging
import os
import plistlib
import re
import shutil
import struct
import subprocess
import sys
import tempfile
import threading
import time
from collections.abc import Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from dotenv import load_dotenv

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Environment variable names
ENV_FINGERPRINT = "CSC_FINGERPRINT"
ENV_APPLE_ID = "APPLEID"
ENV_PASSWORD = "AC_PASSWORD"
ENV_TEAM_ID = "AC_TEAMID"
ENV_ARM64 = "M1"

# Locations of the configuration documents inside the application bundle
SIGNING_CONFIG_PATH = "Contents/build/signing-config-mac.yaml"
PACKAGING_CONFIG_PATH = "Contents/electron-builder.yml"

# Directory suffixes of bundles that carry their own signature
BUNDLE_SUFFIXES = (".app", ".framework")

# Mach-O 64-bit magic numbers, read as a big-endian 32-bit integer
MH_MAGIC_64 = 0xFEEDFACF  # native byte order
MH_CIGAM_64 = 0xCFFAEDFE  # reversed byte order
SIGNABLE_MAGIC_NUMBERS = frozenset({MH_MAGIC_64, MH_CIGAM_64})

# Entitlement file identity shared by every artifact without an override
DEFAULT_ENTITLEMENTS = "default"

# Launch constraint categories, in the order their flags are emitted
CONSTRAINT_CATEGORIES = ("self", "parent", "responsible")

# Placeholder strings in launch constraints and the variables replacing them
CONSTRAINT_PLACEHOLDERS = {
    "${AC_TEAMID}": ENV_TEAM_ID,
}

# Supported packaging architectures and their artifact name suffixes
ARCH_ARM64 = "arm64"
ARCH_X64 = "x64"
ARCH_SUFFIXES = {
    ARCH_ARM64: "aarch64",
    ARCH_X64: "x86_64",
}

DEFAULT_ARTIFACT_NAME = "${productName}-${version}.${ext}"

# Integer range a binary or XML property list can hold
PLIST_INT_MIN = -(1 << 63)
PLIST_INT_MAX = (1 << 64) - 1

# Requirement used to decide whether an artifact already carries a signature
PRESENCE_REQUIREMENT = "anchor apple"

log = logging.getLogger("macsigner")

# ----------------------------------------------------------------------------
# Environment

load_dotenv()

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load user defaults from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macsigner.toml in current directory
    3. macsigner.toml in current directory

    Credentials are deliberately not read from this file; they come from
    the environment (or a .env file).

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Example .macsigner.toml:
        [sign]
        config = "build/signing-config-mac.yaml"

        [release]
        app = "Rancher Desktop.app"
        skip_notarize = true
    """
    if sys.version_info >= (3, 11):
        import tomllib
    else:
        import tomli as tomllib

    if config_path and config_path.exists():
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".macsigner.toml",
            cwd / "macsigner.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
                return data
            except (OSError, tomllib.TOMLDecodeError) as e:
                log.warning("ignoring unreadable config %s: %s", path, e)
                continue

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


def get_config_flag(
    config: dict[str, object], section: str, key: str
) -> bool:
    """Get a boolean value from config; anything but ``true`` is False."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return False
    return section_config.get(key) is True


# ----------------------------------------------------------------------------
# Error handling


class SignerError(Exception):
    """Base exception class for macsigner errors."""


class CommandError(SignerError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class FileError(SignerError):
    """Exception raised when a file operation fails."""


class ConfigurationError(SignerError):
    """Exception raised when configuration is invalid or missing."""


class CodesignError(SignerError):
    """Exception raised when signing or verification fails."""


class NotarizationError(SignerError):
    """Exception raised when notarization fails."""


class PackagingError(SignerError):
    """Exception raised when disk image packaging fails."""


# ----------------------------------------------------------------------------
# Progress indicator


class ProgressSpinner:
    """A simple terminal spinner for long-running operations.

    Example:
        with ProgressSpinner("Waiting for notarization"):
            notarizer.submit()
    """

    SPINNER_CHARS = ["|", "/", "-", "\\"]

    def __init__(self, message: str = ""):
        self.message = message
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _spin(self) -> None:
        spinner = itertools.cycle(self.SPINNER_CHARS)
        while not self._stop_event.is_set():
            sys.stdout.write(f"\r{self.message} {next(spinner)} ")
            sys.stdout.flush()
            time.sleep(0.1)
        sys.stdout.write(f"\r{self.message} done\n")
        sys.stdout.flush()

    def start(self) -> None:
        """Start the spinner."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the spinner."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)

    def __enter__(self) -> "ProgressSpinner":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS[record.levelno]
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def _redact(text: str, secrets: tuple[str, ...]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "****")
    return text


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
    secrets: tuple[str, ...] = (),
) -> str:
    """Run a command and return its output.

    Uses shell=False. Any value listed in ``secrets`` is masked in logged
    command lines and in the resulting error.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output
        secrets: Values to mask when the command line is reported

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = _redact(" ".join(command), secrets)
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    try:
        result = subprocess.run(
            command, shell=False, check=True, text=True, capture_output=True
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    except OSError as e:
        raise CommandError(cmd_str, 127, str(e)) from e


# ----------------------------------------------------------------------------
# Artifact classification


class ArtifactKind(enum.Enum):
    """How the walker treats a directory entry."""

    SKIP_SYMLINK = "skip-symlink"
    SKIP_BUNDLE_EXECUTABLE = "skip-bundle-executable"
    CANDIDATE = "candidate"


def is_bundle_executable(path: Pathlike) -> bool:
    """Check whether a path is the main executable of its bundle.

    ``Foo.app/Contents/MacOS/Foo`` and ``Foo.framework/Versions/A/Foo`` are
    signed implicitly when the enclosing bundle is signed.
    """
    parts = Path(path).parts
    if len(parts) < 4:
        return False
    name = parts[-1]
    if parts[-4:-1] == (f"{name}.app", "Contents", "MacOS"):
        return True
    if parts[-4] == f"{name}.framework" and parts[-3] == "Versions":
        return True
    return False


def classify(path: Pathlike) -> ArtifactKind:
    """Classify a path before any content inspection."""
    path = Path(path)
    if path.is_symlink():
        return ArtifactKind.SKIP_SYMLINK
    if is_bundle_executable(path):
        return ArtifactKind.SKIP_BUNDLE_EXECUTABLE
    return ArtifactKind.CANDIDATE


def is_signable_binary(path: Pathlike) -> bool:
    """Check if a file starts with a 64-bit Mach-O header.

    Only thin 64-bit images are recognised; universal (fat) headers are
    not. Unreadable files are treated as not signable.

    Args:
        path: Path to the file to inspect

    Returns:
        True if the first four bytes are a 64-bit Mach-O magic number
    """
    try:
        with open(path, "rb") as f:
            header = f.read(4)
    except OSError as e:
        log.debug(
            "Failed to read file %s, assuming no need to sign: %s", path, e
        )
        return False
    if len(header) < 4:
        return False
    (magic,) = struct.unpack(">I", header)
    return magic in SIGNABLE_MAGIC_NUMBERS


def is_signed(path: Pathlike) -> bool:
    """Check whether a path already carries a valid Apple-anchored signature.

    A failing verification is the normal answer for an unsigned artifact
    and is never raised.
    """
    command = [
        "codesign",
        "--verify",
        "--strict=all",
        f"--test-requirement={PRESENCE_REQUIREMENT}",
        str(path),
    ]
    try:
        run_command(command)
    except CommandError:
        return False
    return True


# ----------------------------------------------------------------------------
# Bundle tree walker


def find_files_to_sign(directory: Pathlike) -> Iterator[Path]:
    """Recursively walk a directory and yield the paths that need signing.

    Children are always yielded before the bundle containing them, so that
    their signatures can be sealed into the parent signature. Entries are
    visited in name order. Symbolic links are neither yielded nor followed;
    the link target is signed wherever it lives.

    Args:
        directory: Directory to walk, usually the application bundle

    Yields:
        Paths of Mach-O images and bundles that are not yet signed
    """
    directory = Path(directory)
    with os.scandir(directory) as it:
        entries = sorted(it, key=lambda entry: entry.name)

    for entry in entries:
        path = Path(entry.path)
        if entry.is_symlink():
            continue
        if entry.is_dir(follow_symlinks=False):
            yield from find_files_to_sign(path)
            continue
        if not entry.is_file(follow_symlinks=False):
            continue
        if classify(path) is not ArtifactKind.CANDIDATE:
            continue
        if not is_signable_binary(path):
            continue
        if is_signed(path):
            log.debug("Skipping signing of already-signed %s", path)
            continue
        yield path

    if directory.name.endswith(BUNDLE_SUFFIXES):
        if is_signed(directory):
            log.debug("Skipping signing of already-signed %s", directory)
        else:
            yield directory


# ----------------------------------------------------------------------------
# Signing configuration


@dataclass(frozen=True)
class EntitlementOverride:
    """Entitlements replacing the default set for specific paths."""

    paths: frozenset[str]
    entitlements: tuple[str, ...]


@dataclass(frozen=True)
class ConstraintRule:
    """Launch constraint declarations for specific paths.

    ``declarations`` maps a category (self, parent, responsible) to its
    nested declaration; absent categories are simply missing.
    """

    paths: frozenset[str]
    declarations: dict[str, object] = field(default_factory=dict)


def _string_list(value: object, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(
        isinstance(item, str) for item in value
    ):
        raise ConfigurationError(f"{where} must be a list of strings")
    return value


def _check_plist_value(value: object, where: str) -> None:
    """Reject values that cannot be stored in a property list."""
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ConfigurationError(
                    f"{where} has a non-string key: {key!r}"
                )
            _check_plist_value(item, f"{where}.{key}")
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _check_plist_value(item, f"{where}[{index}]")
    elif isinstance(value, bool):
        return
    elif isinstance(value, int):
        if not PLIST_INT_MIN <= value <= PLIST_INT_MAX:
            raise ConfigurationError(
                f"{where}: integer {value} does not fit in a property list"
            )
    elif not isinstance(value, (str, float, bytes, datetime.datetime)):
        raise ConfigurationError(
            f"{where}: {type(value).__name__} values cannot be stored "
            "in a property list"
        )


def _check_unique(rules: list, kind: str) -> None:
    """Reject relative paths listed by more than one rule."""
    owners: dict[str, int] = {}
    for index, rule in enumerate(rules):
        for path in rule.paths:
            if path in owners:
                raise ConfigurationError(
                    f"Path '{path}' appears in {kind} #{owners[path]} "
                    f"and #{index}"
                )
            owners[path] = index


@dataclass(frozen=True)
class SigningConfig:
    """Declarative description of how to sign one application bundle.

    Attributes:
        default_entitlements: entitlements for artifacts without an override
        overrides: per-path entitlement replacements
        constraints: per-path launch constraint declarations
        remove: relative paths deleted from the bundle before signing
        source: file the configuration was loaded from, if any
    """

    default_entitlements: tuple[str, ...]
    overrides: tuple[EntitlementOverride, ...] = ()
    constraints: tuple[ConstraintRule, ...] = ()
    remove: tuple[str, ...] = ()
    source: str | None = field(default=None, compare=False)

    @classmethod
    def from_dict(
        cls, data: object, source: str | None = None
    ) -> "SigningConfig":
        """Build a validated configuration from a parsed YAML document.

        Raises:
            ConfigurationError: on a malformed document, or when a path is
                listed by more than one override or constraint rule
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Signing config must be a mapping")

        entitlements = data.get("entitlements")
        if not isinstance(entitlements, dict) or "default" not in entitlements:
            raise ConfigurationError(
                "Signing config requires entitlements.default"
            )
        default = _string_list(
            entitlements["default"], "entitlements.default"
        )

        overrides = []
        raw_overrides = entitlements.get("overrides") or []
        if not isinstance(raw_overrides, list):
            raise ConfigurationError("entitlements.overrides must be a list")
        for index, raw in enumerate(raw_overrides):
            where = f"entitlements.overrides[{index}]"
            if not isinstance(raw, dict):
                raise ConfigurationError(f"{where} must be a mapping")
            overrides.append(
                EntitlementOverride(
                    paths=frozenset(
                        _string_list(raw.get("paths"), f"{where}.paths")
                    ),
                    entitlements=tuple(
                        _string_list(
                            raw.get("entitlements"), f"{where}.entitlements"
                        )
                    ),
                )
            )
        _check_unique(overrides, "entitlements.overrides")

        constraints = []
        raw_constraints = data.get("constraints") or []
        if not isinstance(raw_constraints, list):
            raise ConfigurationError("constraints must be a list")
        for index, raw in enumerate(raw_constraints):
            where = f"constraints[{index}]"
            if not isinstance(raw, dict):
                raise ConfigurationError(f"{where} must be a mapping")
            unknown = set(raw) - {"paths", *CONSTRAINT_CATEGORIES}
            if unknown:
                raise ConfigurationError(
                    f"{where} has unknown keys: {', '.join(sorted(unknown))}"
                )
            declarations = {}
            for category in CONSTRAINT_CATEGORIES:
                declaration = raw.get(category)
                if declaration is None:
                    continue
                if not isinstance(declaration, dict):
                    raise ConfigurationError(
                        f"{where}.{category} must be a mapping"
                    )
                _check_plist_value(declaration, f"{where}.{category}")
                declarations[category] = declaration
            constraints.append(
                ConstraintRule(
                    paths=frozenset(
                        _string_list(raw.get("paths"), f"{where}.paths")
                    ),
                    declarations=declarations,
                )
            )
        _check_unique(constraints, "constraints")

        return cls(
            default_entitlements=tuple(default),
            overrides=tuple(overrides),
            constraints=tuple(constraints),
            remove=tuple(_string_list(data.get("remove"), "remove")),
            source=source,
        )

    def override_for(self, relpath: str) -> EntitlementOverride | None:
        """Return the entitlement override listing ``relpath``, if any."""
        for override in self.overrides:
            if relpath in override.paths:
                return override
        return None

    def constraint_for(self, relpath: str) -> ConstraintRule | None:
        """Return the constraint rule listing ``relpath``, if any."""
        for rule in self.constraints:
            if relpath in rule.paths:
                return rule
        return None


def load_yaml(path: Pathlike) -> object:
    """Parse a YAML document; merge keys (``<<``) are honoured."""
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f)
    except OSError as e:
        raise FileError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e


def load_signing_config(path: Pathlike) -> SigningConfig:
    """Load and validate the signing configuration at ``path``."""
    log.debug("loading signing config: %s", path)
    return SigningConfig.from_dict(load_yaml(path), source=str(path))


# ----------------------------------------------------------------------------
# Metadata resolution


@dataclass(frozen=True)
class ArtifactMetadata:
    """Everything needed to sign one artifact.

    Attributes:
        relpath: path relative to the bundle root
        key: stable identity of ``relpath``, used to name generated files
        identity: name of the entitlement file, ``key`` or "default"
        entitlements: entitlement names to embed
        constraints: category -> launch constraint declaration
    """

    relpath: str
    key: str
    identity: str
    entitlements: tuple[str, ...]
    constraints: dict[str, object] = field(default_factory=dict)


def artifact_identity(relpath: str) -> str:
    """Return a stable, filename-safe identity for a relative path."""
    digest = hashlib.sha256(relpath.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def resolve_metadata(relpath: str, config: SigningConfig) -> ArtifactMetadata:
    """Resolve entitlements and launch constraints for one artifact."""
    key = artifact_identity(relpath)

    override = config.override_for(relpath)
    if override is not None:
        identity = key
        entitlements = override.entitlements
    else:
        identity = DEFAULT_ENTITLEMENTS
        entitlements = config.default_entitlements

    rule = config.constraint_for(relpath)
    constraints = {}
    if rule is not None:
        for category in CONSTRAINT_CATEGORIES:
            if category in rule.declarations:
                constraints[category] = rule.declarations[category]

    return ArtifactMetadata(
        relpath=relpath,
        key=key,
        identity=identity,
        entitlements=entitlements,
        constraints=constraints,
    )


def evaluate_constraints(
    value: object, environ: Mapping[str, str] | None = None
) -> object:
    """Substitute environment values for placeholders in a declaration.

    Walks nested mappings and lists; a string equal to a known placeholder
    becomes the matching environment value, or stays literal when that
    value is unset or empty. Returns a new structure.
    """
    if environ is None:
        environ = os.environ
    if isinstance(value, dict):
        return {k: evaluate_constraints(v, environ) for k, v in value.items()}
    if isinstance(value, list):
        return [evaluate_constraints(v, environ) for v in value]
    if isinstance(value, str) and value in CONSTRAINT_PLACEHOLDERS:
        return environ.get(CONSTRAINT_PLACEHOLDERS[value]) or value
    return value


def write_plist(path: Path, data: object) -> None:
    """Write ``data`` as an XML property list."""
    try:
        with open(path, "wb") as f:
            plistlib.dump(data, f, fmt=plistlib.FMT_XML, sort_keys=False)
    except OSError as e:
        raise FileError(f"Cannot write {path}: {e}") from e
    except (TypeError, OverflowError) as e:
        raise ConfigurationError(f"Cannot encode {path.name}: {e}") from e


# ----------------------------------------------------------------------------
# Codesigning


class Codesigner:
    """Sign every Mach-O image and nested bundle of an application bundle.

    The workflow is all-or-nothing:
    1. Remove the paths the signing config excludes from the product
    2. Walk the bundle bottom-up, signing each artifact as it is found
    3. Verify the whole bundle deeply and strictly

    Args:
        path: Path to the bundle to sign
        identity: signing certificate fingerprint or name
        config: the bundle's signing configuration
        plists_dir: scratch directory for generated property lists
        dry_run: If True, log signing commands without running them
        verify: If True, verify the bundle after signing
        environ: environment used to evaluate launch constraints

    Example:
        signer = Codesigner("MyApp.app", identity=fingerprint,
                            config=config, plists_dir=tmpdir)
        signer.process()
    """

    def __init__(
        self,
        path: Pathlike,
        identity: str,
        config: SigningConfig,
        plists_dir: Pathlike,
        dry_run: bool = False,
        verify: bool = True,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.path = Path(path).absolute()
        if not self.path.is_dir():
            raise ConfigurationError(f"Bundle does not exist: {self.path}")
        if not identity:
            raise ConfigurationError(
                f"{ENV_FINGERPRINT} environment variable not set; "
                "required to pick signing certificate."
            )
        self.identity = identity
        self.config = config
        self.plists_dir = Path(plists_dir)
        self.dry_run = dry_run
        self.verify_after = verify
        self.environ = os.environ if environ is None else environ
        self.log = logging.getLogger(self.__class__.__name__)

        self.wrote_default_entitlements = False
        self.signed: list[Path] = []

        self._cmd_codesign_base = [
            "codesign",
            "--sign",
            self.identity,
            "--force",
            "--timestamp",
            "--options",
            "runtime",
        ]

    def run_command(self, command: list[str]) -> str:
        """Run a command, honouring dry-run mode."""
        return run_command(command, dry_run=self.dry_run, log=self.log)

    def relative_path(self, path: Path) -> str:
        """Return ``path`` relative to the bundle root, POSIX style."""
        relpath = path.relative_to(self.path).as_posix()
        return "" if relpath == "." else relpath

    def remove_path(self, relpath: str) -> None:
        """Delete one excluded path from the bundle."""
        target = self.path / relpath
        # the entry itself is unlinked, so a symlink's target is irrelevant
        location = target.parent.resolve() / target.name
        root = self.path.resolve()
        if (
            target.name == ".."
            or location == root
            or not location.is_relative_to(root)
        ):
            raise ConfigurationError(
                f"Refusing to remove path outside the bundle: {relpath}"
            )
        if self.dry_run:
            self.log.info("[DRY RUN] remove %s", target)
            return
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()
            else:
                self.log.warning(
                    "already absent, not removed: %s (listed under "
                    "'remove' in %s)",
                    relpath,
                    self.config.source or "the signing config",
                )
                return
        except OSError as e:
            raise FileError(f"Failed to remove {target}: {e}") from e
        self.log.debug("removed: %s", relpath)

    def remove_excluded(self) -> None:
        """Delete every path listed under ``remove``; all finish first."""
        if not self.config.remove:
            return
        with ThreadPoolExecutor() as pool:
            futures = [
                pool.submit(self.remove_path, relpath)
                for relpath in self.config.remove
            ]
            for future in futures:
                future.result()

    def write_entitlements(self, metadata: ArtifactMetadata) -> Path:
        """Write the entitlement plist for ``metadata`` and return its path.

        The shared default file is written once per signer.
        """
        path = self.plists_dir / f"{metadata.identity}-entitlement.plist"
        is_default = metadata.identity == DEFAULT_ENTITLEMENTS
        if not is_default or not self.wrote_default_entitlements:
            write_plist(path, {name: True for name in metadata.entitlements})
            if is_default:
                self.wrote_default_entitlements = True
        return path

    def write_constraints(
        self, metadata: ArtifactMetadata
    ) -> list[tuple[str, Path]]:
        """Write one plist per launch constraint category present."""
        written = []
        for category, declaration in metadata.constraints.items():
            name = f"{metadata.key}-constraint-{category}.plist"
            path = self.plists_dir / name
            write_plist(path, evaluate_constraints(declaration, self.environ))
            written.append((category, path))
        return written

    def codesign_command(self, path: Path) -> list[str]:
        """Build the codesign invocation for one artifact."""
        metadata = resolve_metadata(self.relative_path(path), self.config)
        command = list(self._cmd_codesign_base)
        entitlements = self.write_entitlements(metadata)
        command.extend(["--entitlements", str(entitlements)])
        for category, constraint_file in self.write_constraints(metadata):
            command.extend(
                [f"--launch-constraint-{category}", str(constraint_file)]
            )
        command.append(str(path))
        return command

    def sign(self, path: Path) -> None:
        """Sign one artifact.

        Raises:
            CodesignError: if codesign fails; nothing is retried
        """
        command = self.codesign_command(path)
        self.log.info("signing: %s", self.relative_path(path) or path.name)
        try:
            self.run_command(command)
        except CommandError as e:
            raise CodesignError(
                f"Failed to sign {path}: {e.output or e}"
            ) from e
        self.signed.append(path)

    def verify(self) -> None:
        """Deeply and strictly verify the signed bundle.

        Raises:
            CodesignError: if verification fails
        """
        try:
            self.run_command(
                [
                    "codesign",
                    "--verify",
                    "--deep",
                    "--strict",
                    "--verbose=2",
                    str(self.path),
                ]
            )
        except CommandError as e:
            raise CodesignError(
                f"Signature verification failed: {self.path}: {e.output or e}"
            ) from e
        self.log.info("verified: %s", self.path)
        entitlements = self.run_command(
            ["codesign", "--display", "--entitlements", "-", str(self.path)]
        )
        self.log.debug("embedded entitlements:\n%s", entitlements)

    def process(self) -> list[Path]:
        """Execute the full signing workflow.

        Returns:
            The signed paths, in signing order
        """
        self.log.info("Removing excess files...")
        self.remove_excluded()

        self.log.info("Signing application %s", self.path)
        self.plists_dir.mkdir(parents=True, exist_ok=True)
        for path in find_files_to_sign(self.path):
            self.sign(path)

        if self.verify_after and not self.dry_run:
            self.log.info("Verifying application signature...")
            self.verify()

        self.log.info("signed %d artifact(s)", len(self.signed))
        return self.signed


# ----------------------------------------------------------------------------
# Environment inputs


@dataclass(frozen=True)
class Credentials:
    """Signing and notarization credentials taken from the environment."""

    fingerprint: str
    apple_id: str | None = None
    password: str | None = None
    team_id: str | None = None

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None
    ) -> "Credentials":
        """Read credentials; the certificate fingerprint is mandatory.

        Raises:
            ConfigurationError: if the fingerprint is missing or empty
        """
        if environ is None:
            environ = os.environ
        fingerprint = environ.get(ENV_FINGERPRINT, "")
        if not fingerprint:
            raise ConfigurationError(
                f"{ENV_FINGERPRINT} environment variable not set; "
                "required to pick signing certificate."
            )
        return cls(
            fingerprint=fingerprint,
            apple_id=environ.get(ENV_APPLE_ID) or None,
            password=environ.get(ENV_PASSWORD) or None,
            team_id=environ.get(ENV_TEAM_ID) or None,
        )

    @property
    def can_notarize(self) -> bool:
        return bool(self.apple_id and self.password and self.team_id)


def target_arch(environ: Mapping[str, str] | None = None) -> str:
    """Return the architecture to package for: arm64 when M1 is set."""
    if environ is None:
        environ = os.environ
    return ARCH_ARM64 if environ.get(ENV_ARM64) else ARCH_X64


# ----------------------------------------------------------------------------
# Packaging configuration


def load_packaging_config(path: Pathlike) -> dict[str, object]:
    """Load the packaging configuration; appId and productName are required."""
    data = load_yaml(path)
    if not isinstance(data, dict):
        raise ConfigurationError(f"Packaging config must be a mapping: {path}")
    for key in ("appId", "productName"):
        if not isinstance(data.get(key), str) or not data[key]:
            raise ConfigurationError(
                f"Packaging config requires {key}: {path}"
            )
    return data


def deep_merge(base: dict, override: Mapping) -> dict:
    """Return a copy of ``base`` with ``override`` merged in recursively."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def artifact_name(product_name: str, arch: str) -> str:
    """Return the disk image name template for a product and architecture.

    ``${version}`` and ``${ext}`` are left for the packager to expand.
    """
    product_file_name = re.sub(r"\s+", ".", product_name)
    return f"{product_file_name}-${{version}}.{ARCH_SUFFIXES[arch]}.${{ext}}"


def packaging_options(
    config: dict[str, object], arch: str
) -> dict[str, object]:
    """Packaging options for a signed bundle.

    The ``identity`` is cleared so the bundle is not signed again while
    packaging, and the artifact name records the target architecture.
    """
    name = artifact_name(str(config["productName"]), arch)
    return deep_merge(
        config, {"mac": {"artifactName": name, "identity": None}}
    )


# ----------------------------------------------------------------------------
# Notarization


class Notarizer:
    """Submit a signed application bundle to Apple and staple the ticket.

    Args:
        app: Path to the signed application bundle
        bundle_id: the application identifier
        apple_id: Apple ID used for submission
        password: app-specific password for ``apple_id``
        team_id: developer team identifier
        dry_run: If True, show commands without executing
    """

    def __init__(
        self,
        app: Pathlike,
        bundle_id: str,
        apple_id: str,
        password: str,
        team_id: str,
        dry_run: bool = False,
    ) -> None:
        self.app = Path(app)
        self.bundle_id = bundle_id
        self.apple_id = apple_id
        self.password = password
        self.team_id = team_id
        self.dry_run = dry_run
        self.archive_path = self.app.parent / f"{self.app.stem}.zip"
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str]) -> str:
        return run_command(
            command,
            dry_run=self.dry_run,
            log=self.log,
            secrets=(self.password,),
        )

    def archive(self) -> Path:
        """Zip the bundle for upload, keeping the bundle directory."""
        command = [
            "ditto",
            "-c",
            "-k",
            "--keepParent",
            str(self.app),
            str(self.archive_path),
        ]
        try:
            self.run_command(command)
        except CommandError as e:
            raise NotarizationError(
                f"Failed to archive {self.app}: {e.output or e}"
            ) from e
        return self.archive_path

    def submit(self) -> None:
        """Submit the archive to the notary service and wait for a verdict.

        Raises:
            NotarizationError: If notarization fails
        """
        self.log.info("Notarizing %s (%s)", self.app, self.bundle_id)
        command = [
            "xcrun",
            "notarytool",
            "submit",
            str(self.archive_path),
            "--apple-id",
            self.apple_id,
            "--password",
            self.password,
            "--team-id",
            self.team_id,
            "--wait",
        ]
        try:
            if self.dry_run:
                self.run_command(command)
            else:
                with ProgressSpinner("Waiting for notarization"):
                    self.run_command(command)
        except CommandError as e:
            raise NotarizationError(
                f"Notarization failed for {self.app}: {e.output or e}"
            ) from e

    def staple(self) -> None:
        """Staple the notarization ticket to the bundle."""
        command = ["xcrun", "stapler", "staple", str(self.app)]
        try:
            self.run_command(command)
        except CommandError as e:
            raise NotarizationError(
                f"Stapling failed for {self.app}: {e.output or e}"
            ) from e

    def process(self) -> None:
        """Archive, submit and staple; the archive is always removed."""
        try:
            self.archive()
            self.submit()
            self.staple()
        finally:
            if self.archive_path.exists():
                self.archive_path.unlink()


# ----------------------------------------------------------------------------
# Disk image packaging


class Packager:
    """Build and sign the distributable disk image of a signed bundle.

    The bundle itself is never re-signed here; only the disk image is.

    Args:
        source: Path to the signed application bundle
        options: packaging options from ``packaging_options()``
        identity: signing certificate fingerprint or name
        output_dir: directory for the image (default: next to the bundle)
        dry_run: If True, show commands without executing
    """

    def __init__(
        self,
        source: Pathlike,
        options: dict[str, object],
        identity: str,
        output_dir: Pathlike | None = None,
        dry_run: bool = False,
    ) -> None:
        self.source = Path(source)
        if not self.source.exists():
            raise ConfigurationError(f"Source does not exist: {self.source}")
        self.options = options
        self.identity = identity
        self.output_dir = (
            Path(output_dir) if output_dir else self.source.parent
        )
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str]) -> str:
        return run_command(command, dry_run=self.dry_run, log=self.log)

    @property
    def product_name(self) -> str:
        return str(self.options.get("productName") or self.source.stem)

    def bundle_version(self) -> str:
        """Read the short version string from the bundle's Info.plist."""
        info_plist = self.source / "Contents" / "Info.plist"
        try:
            with open(info_plist, "rb") as f:
                info = plistlib.load(f)
        except (OSError, plistlib.InvalidFileException) as e:
            raise PackagingError(f"Cannot read {info_plist}: {e}") from e
        version = info.get("CFBundleShortVersionString") or info.get(
            "CFBundleVersion"
        )
        if not version:
            raise PackagingError(f"No bundle version in {info_plist}")
        return str(version)

    @property
    def output(self) -> Path:
        """Path of the disk image, from the artifact name template."""
        mac = self.options.get("mac") or {}
        template = mac.get("artifactName") or DEFAULT_ARTIFACT_NAME
        macros = {
            "productName": self.product_name,
            "version": self.bundle_version(),
            "ext": "dmg",
        }

        def expand(match: re.Match) -> str:
            name = match.group(1)
            if name not in macros:
                raise PackagingError(
                    f"Unknown macro ${{{name}}} in artifact name: {template}"
                )
            return macros[name]

        return self.output_dir / re.sub(r"\$\{\s*(\w+)\s*\}", expand, template)

    def create_dmg(self) -> Path:
        """Create the disk image from the bundle using hdiutil."""
        output = self.output
        self.log.info("Building disk image: %s", output)
        if not self.dry_run:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            if output.exists():
                output.unlink()
        command = [
            "hdiutil",
            "create",
            "-volname",
            self.product_name,
            "-srcfolder",
            str(self.source),
            "-ov",
            "-format",
            "UDZO",
            str(output),
        ]
        try:
            self.run_command(command)
        except CommandError as e:
            raise PackagingError(
                f"Failed to create {output}: {e.output or e}"
            ) from e
        if not self.dry_run and not output.exists():
            raise PackagingError(f"Could not find signed disk image: {output}")
        return output

    def sign_dmg(self, dmg: Path) -> None:
        """Sign the disk image."""
        self.log.info("Signing disk image: %s", dmg)
        command = [
            "codesign",
            "--sign",
            self.identity,
            "--timestamp",
            str(dmg),
        ]
        try:
            self.run_command(command)
        except CommandError as e:
            raise CodesignError(
                f"Failed to sign {dmg}: {e.output or e}"
            ) from e

    def process(self) -> Path:
        """Build and sign the disk image.

        Returns:
            Path to the signed disk image
        """
        dmg = self.create_dmg()
        self.sign_dmg(dmg)
        self.log.info("Packaging complete: %s", dmg)
        return dmg


# ----------------------------------------------------------------------------
# Release workflow


def find_app_bundle(directory: Pathlike, app_name: str | None = None) -> Path:
    """Locate the application bundle to release inside ``directory``."""
    directory = Path(directory)
    if app_name:
        app = directory / app_name
        if not app.is_dir():
            raise ConfigurationError(f"Application bundle not found: {app}")
        return app
    apps = sorted(p for p in directory.glob("*.app") if p.is_dir())
    if len(apps) != 1:
        raise ConfigurationError(
            f"Expected exactly one .app in {directory}, found {len(apps)}; "
            "pass the bundle name explicitly"
        )
    return apps[0]


def sign_release(
    work_dir: Pathlike,
    app_name: str | None = None,
    skip_notarize: bool = False,
    dry_run: bool = False,
    environ: Mapping[str, str] | None = None,
) -> Path:
    """Sign, verify, notarize and package the bundle under ``work_dir``.

    The bundle is expected at ``<work_dir>/unpacked/<app_name>``; the disk
    image is written to ``<work_dir>/dist``. Credentials are checked before
    anything in the bundle is touched.

    Returns:
        Path to the signed disk image

    Raises:
        ConfigurationError: on missing credentials or configuration
        CodesignError: if signing or verification fails
        NotarizationError: if notarization fails
        PackagingError: if the disk image cannot be produced
    """
    if environ is None:
        environ = os.environ
    work_dir = Path(work_dir)

    credentials = Credentials.from_env(environ)
    if skip_notarize:
        log.warning("Skipping notarization: --skip-notarize given.")
    elif not credentials.can_notarize:
        raise ConfigurationError(
            f"{ENV_APPLE_ID}, {ENV_PASSWORD}, or {ENV_TEAM_ID} environment "
            "variables not given, cannot notarize.\n"
            "To force skip notarization, please pass --skip-notarize."
        )

    app_dir = find_app_bundle(work_dir / "unpacked", app_name)
    packaging = load_packaging_config(app_dir / PACKAGING_CONFIG_PATH)
    signing = load_signing_config(app_dir / SIGNING_CONFIG_PATH)

    with tempfile.TemporaryDirectory(prefix="macsigner-plists-") as plists_dir:
        signer = Codesigner(
            app_dir,
            identity=credentials.fingerprint,
            config=signing,
            plists_dir=plists_dir,
            dry_run=dry_run,
            environ=environ,
        )
        signer.process()

    if not skip_notarize:
        Notarizer(
            app_dir,
            bundle_id=str(packaging["appId"]),
            apple_id=credentials.apple_id or "",
            password=credentials.password or "",
            team_id=credentials.team_id or "",
            dry_run=dry_run,
        ).process()

    options = packaging_options(packaging, target_arch(environ))
    packager = Packager(
        app_dir,
        options,
        identity=credentials.fingerprint,
        output_dir=work_dir / "dist",
        dry_run=dry_run,
    )
    return packager.process()


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show commands without executing",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _cmd_sign(args: argparse.Namespace) -> None:
    """Handle 'sign' subcommand."""
    setup_logging(args.verbose, not args.no_color)

    bundle = Path(args.bundle)
    if not bundle.is_dir():
        log.error("Bundle does not exist: %s", bundle)
        sys.exit(1)

    config_path = args.config
    if config_path is None:
        config_path = get_config_value(get_config(), "sign", "config")
    if config_path is None:
        config_path = bundle / SIGNING_CONFIG_PATH

    credentials = Credentials.from_env()
    config = load_signing_config(config_path)

    with tempfile.TemporaryDirectory(prefix="macsigner-plists-") as plists_dir:
        signer = Codesigner(
            path=bundle,
            identity=credentials.fingerprint,
            config=config,
            plists_dir=args.plists_dir or plists_dir,
            dry_run=args.dry_run,
            verify=not args.no_verify,
        )
        signer.process()

    log.info("Signed: %s", bundle)


def _cmd_release(args: argparse.Namespace) -> None:
    """Handle 'release' subcommand."""
    setup_logging(args.verbose, not args.no_color)

    config = get_config()
    app_name = args.app
    if app_name is None:
        app_name = get_config_value(config, "release", "app")
    skip_notarize = args.skip_notarize or get_config_flag(
        config, "release", "skip_notarize"
    )

    dmg = sign_release(
        args.work_dir,
        app_name=app_name,
        skip_notarize=skip_notarize,
        dry_run=args.dry_run,
    )
    log.info("Created: %s", dmg)


# Global config (loaded lazily)
_config: dict[str, object] | None = None


def get_config() -> dict[str, object]:
    """Get the global configuration, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def main(argv: list[str] | None = None) -> None:
    """Command line interface for macsigner."""
    try:
        parser = argparse.ArgumentParser(
            prog="macsigner",
            description=(
                "Sign, notarize and package macOS application bundles."
            ),
            epilog=(
                "Examples:\n"
                "  macsigner sign 'Rancher Desktop.app'\n"
                "  macsigner release dist/ --skip-notarize\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--version", action="version", version=f"%(prog)s {__version__}"
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- sign subcommand ---
        sign_parser = subparsers.add_parser(
            "sign",
            help="sign a bundle in place",
            description=(
                "Remove excluded files, sign every nested artifact bottom-up "
                "and verify the bundle."
            ),
            epilog=(
                "Examples:\n"
                "  macsigner sign MyApp.app\n"
                "  macsigner sign MyApp.app -c signing-config-mac.yaml\n"
                "  macsigner sign MyApp.app --dry-run\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        sign_parser.add_argument(
            "bundle",
            help="path to the application bundle to sign",
        )
        sign_parser.add_argument(
            "-c",
            "--config",
            metavar="FILE",
            help=f"signing config (default: <bundle>/{SIGNING_CONFIG_PATH})",
        )
        sign_parser.add_argument(
            "--plists-dir",
            metavar="DIR",
            help="keep generated plists in DIR (default: temporary directory)",
        )
        sign_parser.add_argument(
            "--no-verify",
            action="store_true",
            help="skip signature verification",
        )
        _add_common_options(sign_parser)
        sign_parser.set_defaults(func=_cmd_sign)

        # --- release subcommand ---
        release_parser = subparsers.add_parser(
            "release",
            help="sign, notarize and build a signed DMG",
            description=(
                "Sign the bundle in WORK_DIR/unpacked, notarize it and build "
                "a signed disk image in WORK_DIR/dist."
            ),
            epilog=(
                "Examples:\n"
                "  macsigner release dist/\n"
                "  macsigner release dist/ --app 'Rancher Desktop.app'\n"
                "  macsigner release dist/ --skip-notarize\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        release_parser.add_argument(
            "work_dir",
            help="directory containing unpacked/<App>.app",
        )
        release_parser.add_argument(
            "-a",
            "--app",
            metavar="NAME",
            help="application bundle name (default: the only .app)",
        )
        release_parser.add_argument(
            "--skip-notarize",
            action="store_true",
            help="do not notarize, even without credentials",
        )
        _add_common_options(release_parser)
        release_parser.set_defaults(func=_cmd_release)

        args = parser.parse_args(argv)
        args.func(args)

    except SignerError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
