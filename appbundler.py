#!/usr/bin/env python3
"""appbundler - bundle orchestration and archival for desktop applications.

This module provides tools for:
1. Resolving a layered configuration into one immutable bundling Settings
2. Ordering the requested package types so dependants build after their
   prerequisites (a .dmg needs the .app, an updater archive needs either)
3. Producing platform artifacts: .app bundles, .dmg images, AppImages
   and updater archives (.tar.gz)

It also carries the low-level helpers the bundlers share: symlink-safe
directory copies, tar.gz and zip writers, and a process runner that
drains stdout and stderr concurrently.

Usage (CLI):
    # Build every package type native to the host
    appbundler bundle -c appbundler.toml -o target/release

    # Build only the .app and its updater archive
    appbundler bundle -b app updater

    # Archive a single artifact
    appbundler archive target/release/MyApp.app

Usage (API):
    from appbundler import SettingsBuilder, PackageSettings, bundle_project

    settings = (
        SettingsBuilder()
        .package_settings(PackageSettings("MyApp", "1.0.0"))
        .project_out_directory("target/release")
        .binaries([BundleBinary("myapp", main=True)])
        .build()
    )
    for bundle in bundle_project(settings):
        print(bundle.package_type, bundle.bundle_paths)
"""

import argparse
import dataclasses
import datetime
import enum
import glob
import logging
import os
import platform
import shutil
import stat
import subprocess
import sys
import tarfile
import threading
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator
from xml.sax.saxutils import escape

from macholib import macho_standalone

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Bundle package type identifier (APPL = Application, ???? = creator code)
PKG_INFO_CONTENT = "APPL????"

# Default minimum macOS version
DEFAULT_MIN_SYSTEM_VERSION = "10.13"

# Default Windows icon location (relative to the project root)
DEFAULT_WINDOWS_ICON_PATH = "icons/icon.ico"

# Environment variable names
ENV_TARGET = "APPBUNDLER_TARGET"
ENV_UPDATER_PUBKEY = "APPBUNDLER_UPDATER_PUBKEY"

# Where macOS looks for frameworks referenced by bare name
FRAMEWORK_SEARCH_PATHS = [
    "~/Library/Frameworks",
    "/Library/Frameworks",
    "/Network/Library/Frameworks",
]

# Permission bits forced on zip entries so artifacts stay executable
ZIP_ENTRY_MODE = 0o755

# Placeholders used when a resource path leaves the project tree
RESOURCE_PARENT_DIR = "_up_"
RESOURCE_ROOT_DIR = "_root_"

GLOB_CHARS = "*?["

INFO_PLIST_TMPL = """\
<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>CFBundleDevelopmentRegion</key>
    <string>English</string>
    <key>CFBundleDisplayName</key>
    <string>{bundle_name}</string>
    <key>CFBundleExecutable</key>
    <string>{executable}</string>
    <key>CFBundleIconFile</key>
    <string>{icon_file}</string>
    <key>CFBundleIdentifier</key>
    <string>{bundle_identifier}</string>
    <key>CFBundleInfoDictionaryVersion</key>
    <string>6.0</string>
    <key>CFBundleName</key>
    <string>{bundle_name}</string>
    <key>CFBundlePackageType</key>
    <string>APPL</string>
    <key>CFBundleShortVersionString</key>
    <string>{bundle_version}</string>
    <key>CFBundleVersion</key>
    <string>{bundle_version}</string>
    <key>CSResourcesFileMapped</key>
    <true/>
    <key>LSMinimumSystemVersion</key>
    <string>{min_system_version}</string>
    <key>NSHighResolutionCapable</key>
    <true/>
{extra_entries}</dict>
</plist>
"""

COPYRIGHT_PLIST_TMPL = """\
    <key>NSHumanReadableCopyright</key>
    <string>{copyright}</string>
"""

EXCEPTION_DOMAIN_PLIST_TMPL = """\
    <key>NSAppTransportSecurity</key>
    <dict>
        <key>NSExceptionDomains</key>
        <dict>
            <key>{domain}</key>
            <dict>
                <key>NSExceptionAllowsInsecureHTTPLoads</key>
                <true/>
                <key>NSIncludesSubdomains</key>
                <true/>
            </dict>
        </dict>
    </dict>
"""

CATEGORY_PLIST_TMPL = """\
    <key>LSApplicationCategoryType</key>
    <string>{category}</string>
"""

PLIST_ARRAY_KEY_TMPL = """\
    <key>{key}</key>
    <array>
{items}    </array>
"""

PLIST_ARRAY_ITEM_TMPL = """\
                <string>{value}</string>
"""

DOCUMENT_TYPE_PLIST_TMPL = """\
        <dict>
            <key>CFBundleTypeExtensions</key>
            <array>
{extensions}            </array>
            <key>CFBundleTypeName</key>
            <string>{name}</string>
            <key>CFBundleTypeRole</key>
            <string>{role}</string>
        </dict>
"""

URL_TYPE_PLIST_TMPL = """\
        <dict>
            <key>CFBundleURLName</key>
            <string>{name}</string>
            <key>CFBundleTypeRole</key>
            <string>{role}</string>
            <key>CFBundleURLSchemes</key>
            <array>
{schemes}            </array>
        </dict>
"""

DESKTOP_ENTRY_TMPL = """\
[Desktop Entry]
Categories={categories}
Comment={comment}
Exec={executable}
Icon={icon}
Name={name}
Terminal=false
Type=Application
{mime_type}"""

# ----------------------------------------------------------------------------
# Optional dotenv support


def _load_dotenv() -> None:
    """Attempt to load .env file if python-dotenv is available."""
    try:
        from dotenv import load_dotenv

        load_dotenv()
    except ImportError:
        pass


_load_dotenv()

# ----------------------------------------------------------------------------
# Error handling


class BundlerError(Exception):
    """Base exception class for appbundler errors."""


class CommandError(BundlerError):
    """Exception raised when an external program fails."""

    def __init__(
        self, program: str, returncode: int, output: str | None = None
    ):
        self.program = program
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"failed to run {program} (return code {returncode})"
        )


class FileError(BundlerError):
    """Exception raised when a file operation fails."""


class ResourceError(FileError):
    """Exception raised when a resource path cannot be resolved."""


class ConfigurationError(BundlerError):
    """Exception raised when configuration is invalid."""


class PackagingError(BundlerError):
    """Exception raised when an artifact could not be produced."""


class UnableToFindProjectError(BundlerError):
    """Exception raised when a prerequisite bundle was not built."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message or "Unable to find a bundled project for the updater"
        )


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        cyan = "\x1b[36;20m"
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


def setup_logging(debug: bool = True, use_color: bool = True) -> None:
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
        force=True,
    )


logger = logging.getLogger("appbundler")

# ----------------------------------------------------------------------------
# Path and archive utilities


def is_retina(path: Pathlike) -> bool:
    """Return True if the file stem marks a high-density ("@2x") image."""
    return Path(path).stem.endswith("@2x")


def create_file(path: Pathlike) -> BinaryIO:
    """Create (or truncate) a file, creating missing parent directories.

    Returns:
        A buffered binary writer; the caller owns and closes it.

    Raises:
        FileError: If a directory or the file cannot be created
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return open(path, "wb")
    except OSError as e:
        raise FileError(f"Failed to create file {path}: {e}") from e


def copy_file(src: Pathlike, dst: Pathlike) -> None:
    """Copy a regular file, creating the destination's parent directories.

    An existing destination is overwritten. Permission bits are copied
    along with the content.

    Raises:
        FileError: If src is missing, is not a regular file, or the copy fails
    """
    src, dst = Path(src), Path(dst)
    if not src.exists():
        raise FileError(f"{src} does not exist")
    if not src.is_file():
        raise FileError(f"{src} is not a file")
    try:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy(src, dst)
    except OSError as e:
        raise FileError(f"Failed to copy {src} to {dst}: {e}") from e


def copy_dir(src: Pathlike, dst: Pathlike) -> None:
    """Recursively copy a directory tree without following symlinks.

    Symlinks are recreated pointing at their original (unresolved)
    target, so relative links stay relative. The destination must not
    exist yet; its parents are created as needed.

    Raises:
        FileError: If src is missing or not a directory, dst exists,
            or any entry fails to copy
    """
    src, dst = Path(src), Path(dst)
    if not src.exists():
        raise FileError(f"{src} does not exist")
    if not src.is_dir():
        raise FileError(f"{src} is not a directory")
    if dst.exists() or dst.is_symlink():
        raise FileError(f"{dst} already exists")

    current = src
    try:
        dst.parent.mkdir(parents=True, exist_ok=True)
        dst.mkdir()
        for root, dirnames, filenames in os.walk(src):
            root_path = Path(root)
            for name in sorted(dirnames) + sorted(filenames):
                current = root_path / name
                dest_path = dst / current.relative_to(src)
                if current.is_symlink():
                    os.symlink(
                        os.readlink(current),
                        dest_path,
                        target_is_directory=current.is_dir(),
                    )
                elif current.is_dir():
                    dest_path.mkdir()
                else:
                    shutil.copy(current, dest_path)
    except OSError as e:
        raise FileError(f"Failed to copy {current} into {dst}: {e}") from e


def create_tar(src: Pathlike, dest_path: Pathlike) -> Path:
    """Write a gzip-compressed tar of src to dest_path.

    The archive keeps the top-level name of src: a directory ``App.app``
    unpacks to ``App.app/...`` and a single file unpacks to exactly one
    entry named after that file. When src itself is a symlink its
    target is archived under the link's name; symlinks inside the tree
    are stored as links, never followed.

    Returns:
        dest_path

    Raises:
        FileError: If src is missing or reading/writing fails
    """
    src, dest_path = Path(src), Path(dest_path)
    if not src.exists():
        raise FileError(f"{src} does not exist")

    with create_file(dest_path) as dest_file:
        try:
            with tarfile.open(fileobj=dest_file, mode="w:gz") as tar:
                tar.add(str(src.resolve()), arcname=src.name, recursive=True)
        except (OSError, tarfile.TarError) as e:
            raise FileError(
                f"Failed to tar.gz {src} into {dest_path}: {e}"
            ) from e
    return dest_path


def create_zip(src_file: Pathlike, dst_file: Pathlike) -> Path:
    """Store a single file (uncompressed) at the root of a zip archive.

    The entry always carries unix mode 0o755 so it stays executable
    after extraction on another machine.

    Returns:
        dst_file

    Raises:
        FileError: If src_file cannot be read or dst_file written
    """
    src_file, dst_file = Path(src_file), Path(dst_file)
    if not src_file.is_file():
        raise FileError(f"{src_file} is not a file")

    with create_file(dst_file) as writer:
        try:
            info = zipfile.ZipInfo.from_file(src_file, arcname=src_file.name)
            info.compress_type = zipfile.ZIP_STORED
            info.create_system = 3
            info.external_attr = (stat.S_IFREG | ZIP_ENTRY_MODE) << 16
            with zipfile.ZipFile(writer, mode="w") as archive:
                with open(src_file, "rb") as reader, archive.open(
                    info, mode="w"
                ) as entry:
                    shutil.copyfileobj(reader, entry)
        except (OSError, zipfile.LargeZipFile) as e:
            raise FileError(
                f"Failed to zip {src_file} into {dst_file}: {e}"
            ) from e
    return dst_file


def make_executable(path: Pathlike) -> None:
    """Add the execute bits for user, group and others."""
    oldmode = os.stat(path).st_mode
    os.chmod(path, oldmode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


# ----------------------------------------------------------------------------
# Process runner


@dataclass(frozen=True)
class CommandOutput:
    """Exit status and captured output of a finished command."""

    status: int
    stdout: bytes
    stderr: bytes


class StreamCollector(threading.Thread):
    """Drains one pipe of a child process line by line.

    Each collector owns its buffer exclusively; the parent reads
    ``data`` only after ``join()``.
    """

    def __init__(self, stream: BinaryIO, label: str):
        super().__init__(name=f"{label}-collector", daemon=True)
        self.stream = stream
        self.label = label
        self.data = bytearray()
        self.error: OSError | None = None

    def run(self) -> None:
        try:
            for line in iter(self.stream.readline, b""):
                logger.debug(
                    "[%s] %s",
                    self.label,
                    line.rstrip().decode("utf-8", errors="replace"),
                )
                self.data.extend(line)
        except OSError as e:
            self.error = e
        finally:
            self.stream.close()


def _format_command(command: list[Pathlike]) -> str:
    return " ".join(str(arg) for arg in command)


def piped(
    command: list[Pathlike],
    cwd: Pathlike | None = None,
    env: dict[str, str] | None = None,
) -> int:
    """Run a command with the current stdout/stderr passed through.

    Used for long-running tools whose output is only shown live.

    Returns:
        The exit status (not checked)

    Raises:
        CommandError: If the program cannot be started
    """
    program = str(command[0])
    logger.debug("Running Command `%s`", _format_command(command))
    try:
        return subprocess.run(
            [str(arg) for arg in command], cwd=cwd, env=env, check=False
        ).returncode
    except OSError as e:
        raise CommandError(program, 127, str(e)) from e


def output_ok(
    command: list[Pathlike],
    cwd: Pathlike | None = None,
    env: dict[str, str] | None = None,
) -> CommandOutput:
    """Run a command, capturing stdout and stderr concurrently.

    Both pipes are drained by their own thread while the child runs, so
    a child that writes heavily to either stream cannot stall. Every
    line is logged at debug level as it arrives.

    Returns:
        The command output

    Raises:
        CommandError: If the program cannot be started or exits non-zero
        FileError: If reading one of the pipes fails
    """
    program = str(command[0])
    logger.debug("Running Command `%s`", _format_command(command))
    try:
        child = subprocess.Popen(
            [str(arg) for arg in command],
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise CommandError(program, 127, str(e)) from e

    stdout = StreamCollector(child.stdout, "stdout")
    stderr = StreamCollector(child.stderr, "stderr")
    stdout.start()
    stderr.start()
    status = child.wait()
    stdout.join()
    stderr.join()

    for collector in (stdout, stderr):
        if collector.error is not None:
            raise FileError(
                f"Failed to read {collector.label} of {program}: "
                f"{collector.error}"
            ) from collector.error

    output = CommandOutput(status, bytes(stdout.data), bytes(stderr.data))
    if status != 0:
        raise CommandError(
            program, status, output.stderr.decode("utf-8", errors="replace")
        )
    return output


# ----------------------------------------------------------------------------
# Package types


class PackageType(enum.Enum):
    """A distributable artifact format."""

    MACOS_BUNDLE = enum.auto()
    IOS_BUNDLE = enum.auto()
    APP_IMAGE = enum.auto()
    DMG = enum.auto()
    UPDATER = enum.auto()

    @classmethod
    def from_short_name(cls, name: str) -> "PackageType | None":
        """Map a short name ("app", "dmg", ...) to a package type."""
        return _PACKAGE_TYPES_BY_NAME.get(name)

    @classmethod
    def all(cls) -> list["PackageType"]:
        return list(_SHORT_NAMES)

    @property
    def short_name(self) -> str:
        return _SHORT_NAMES[self]

    @property
    def priority(self) -> int:
        """Build order rank: lower values must be built first.

        A package type that consumes another one's output always ranks
        after it (Dmg after MacOsBundle, Updater after both bundles).
        """
        return _PRIORITIES[self]

    def __str__(self) -> str:
        return self.short_name


_SHORT_NAMES = {
    PackageType.IOS_BUNDLE: "ios",
    PackageType.MACOS_BUNDLE: "app",
    PackageType.APP_IMAGE: "appimage",
    PackageType.DMG: "dmg",
    PackageType.UPDATER: "updater",
}

_PACKAGE_TYPES_BY_NAME = {name: ptype for ptype, name in _SHORT_NAMES.items()}

_PRIORITIES = {
    PackageType.MACOS_BUNDLE: 0,
    PackageType.IOS_BUNDLE: 0,
    PackageType.APP_IMAGE: 0,
    PackageType.DMG: 1,
    PackageType.UPDATER: 2,
}


def parse_package_type(name: str) -> PackageType:
    """Like PackageType.from_short_name but raises on unknown names."""
    package_type = PackageType.from_short_name(name)
    if package_type is None:
        known = ", ".join(_SHORT_NAMES.values())
        raise ConfigurationError(
            f"Unknown package type '{name}' (expected one of: {known})"
        )
    return package_type


def sort_package_types(package_types: list[PackageType]) -> list[PackageType]:
    """Deduplicate and order package types for building."""
    unique = list(dict.fromkeys(package_types))
    return sorted(unique, key=lambda ptype: ptype.priority)


# ----------------------------------------------------------------------------
# Resource paths


def resource_relpath(path: Pathlike) -> Path:
    """Map a source path to its location inside a bundle's resources.

    ``./data/a.png`` -> ``data/a.png``, ``../a.png`` -> ``_up_/a.png``,
    ``/abs/a.png`` -> ``_root_/abs/a.png``.
    """
    path = Path(path)
    parts = []
    if path.anchor:
        parts.append(RESOURCE_ROOT_DIR)
    for part in path.parts[1 if path.anchor else 0 :]:
        if part == ".":
            continue
        parts.append(RESOURCE_PARENT_DIR if part == ".." else part)
    return Path(*parts)


def _has_glob(pattern: str) -> bool:
    return any(char in pattern for char in GLOB_CHARS)


def _glob(pattern: str) -> list[Path]:
    return [Path(match) for match in sorted(glob.glob(pattern, recursive=True))]


def _walk_files(directory: Path) -> Iterator[Path]:
    for root, dirnames, filenames in os.walk(directory):
        dirnames.sort()
        for name in sorted(filenames):
            yield Path(root) / name


@dataclass(frozen=True)
class ResourcePath:
    """A resolved source file and its bundle-relative destination."""

    path: Path
    target: Path


class ResourcePaths:
    """Lazily expands glob patterns into ResourcePath items.

    Every ``iter()`` starts a fresh expansion, so the same instance can
    be walked repeatedly. A pattern that matches nothing raises
    ResourceError when the iteration reaches it.

    Args:
        patterns: Glob patterns or plain paths
        allow_walk: Whether a matched directory is walked recursively
    """

    def __init__(self, patterns: list[str], allow_walk: bool = True):
        self.patterns = list(patterns)
        self.mapping: dict[str, str] | None = None
        self.allow_walk = allow_walk

    @classmethod
    def from_map(
        cls, mapping: dict[str, str], allow_walk: bool = True
    ) -> "ResourcePaths":
        """Build from an explicit {source pattern: target path} map."""
        resources = cls([], allow_walk)
        resources.mapping = dict(mapping)
        return resources

    def __iter__(self) -> Iterator[ResourcePath]:
        if self.mapping is not None:
            return self._iter_map()
        return self._iter_patterns()

    def _matches(self, pattern: str) -> list[Path]:
        matches = _glob(pattern)
        if not matches:
            raise ResourceError(f"Path matching '{pattern}' not found")
        return matches

    def _check_walk(self, directory: Path) -> None:
        if not self.allow_walk:
            raise ResourceError(
                f"{directory} is a directory but walking is not allowed"
            )

    def _iter_patterns(self) -> Iterator[ResourcePath]:
        for pattern in self.patterns:
            for match in self._matches(pattern):
                if match.is_dir():
                    self._check_walk(match)
                    for path in _walk_files(match):
                        yield ResourcePath(path, resource_relpath(path))
                else:
                    yield ResourcePath(match, resource_relpath(match))

    def _iter_map(self) -> Iterator[ResourcePath]:
        for pattern, target in self.mapping.items():
            target = Path(target)
            globbed = _has_glob(pattern)
            for match in self._matches(pattern):
                if match.is_dir():
                    self._check_walk(match)
                    base = target / match.name if globbed else target
                    for path in _walk_files(match):
                        yield ResourcePath(path, base / path.relative_to(match))
                elif globbed:
                    yield ResourcePath(match, target / match.name)
                else:
                    yield ResourcePath(match, target)


# ----------------------------------------------------------------------------
# Settings model


@dataclass(frozen=True)
class PackageSettings:
    """Package metadata of the application being bundled."""

    product_name: str
    version: str
    description: str = ""
    homepage: str | None = None
    authors: list[str] | None = None
    default_run: str | None = None


@dataclass(frozen=True)
class UpdaterSettings:
    """Updater configuration; an empty pubkey disables updates."""

    pubkey: str = ""


@dataclass(frozen=True)
class AppImageSettings:
    # AppDir-relative destination -> source path
    files: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Position:
    x: int = 0
    y: int = 0


@dataclass(frozen=True)
class Size:
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class DmgSettings:
    """DMG appearance settings.

    Only ``background`` is applied by this module; window geometry is
    kept for tools that script the Finder layout.
    """

    background: str | None = None
    window_position: Position | None = None
    window_size: Size = field(default_factory=lambda: Size(660, 400))
    app_position: Position = field(default_factory=lambda: Position(180, 170))
    application_folder_position: Position = field(
        default_factory=lambda: Position(480, 170)
    )


@dataclass(frozen=True)
class MacOsSettings:
    """macOS .app specific settings.

    Args:
        frameworks: Framework names (searched in the standard locations)
            or paths to ``.framework`` directories / ``.dylib`` files
        files: Contents-relative destination -> source path
        minimum_system_version: LSMinimumSystemVersion value
        exception_domain: Domain allowed over plain HTTP
        info_plist_path: Use this Info.plist instead of generating one
        bundle_dylibs: Copy non-system dylibs into the bundle (macOS host)
    """

    frameworks: list[str] | None = None
    files: dict[str, str] = field(default_factory=dict)
    minimum_system_version: str | None = DEFAULT_MIN_SYSTEM_VERSION
    exception_domain: str | None = None
    signing_identity: str | None = None
    provider_short_name: str | None = None
    entitlements: str | None = None
    info_plist_path: str | None = None
    bundle_dylibs: bool = True


@dataclass(frozen=True)
class WindowsSettings:
    digest_algorithm: str | None = None
    certificate_thumbprint: str | None = None
    timestamp_url: str | None = None
    tsp: bool = False
    icon_path: str = DEFAULT_WINDOWS_ICON_PATH
    allow_downgrades: bool = True


class AppCategory(enum.Enum):
    """Application category.

    Each value pairs the macOS ``LSApplicationCategoryType`` suffix with
    the freedesktop.org menu categories used in .desktop entries.
    """

    BUSINESS = ("business", "Office;")
    DEVELOPER_TOOL = ("developer-tools", "Development;")
    EDUCATION = ("education", "Education;")
    ENTERTAINMENT = ("entertainment", "AudioVideo;")
    FINANCE = ("finance", "Office;Finance;")
    GAME = ("games", "Game;")
    GRAPHICS_AND_DESIGN = ("graphics-design", "Graphics;")
    HEALTHCARE_AND_FITNESS = ("healthcare-fitness", "Science;MedicalSoftware;")
    LIFESTYLE = ("lifestyle", "Utility;")
    MEDICAL = ("medical", "Science;MedicalSoftware;")
    MUSIC = ("music", "AudioVideo;Audio;Music;")
    NEWS = ("news", "Network;News;")
    PHOTOGRAPHY = ("photography", "Graphics;Photography;")
    PRODUCTIVITY = ("productivity", "Office;")
    REFERENCE = ("reference", "Education;")
    SOCIAL_NETWORKING = ("social-networking", "Network;Chat;")
    SPORTS = ("sports", "Game;SportsGame;")
    TRAVEL = ("travel", "Education;")
    UTILITY = ("utilities", "Utility;")
    VIDEO = ("video", "AudioVideo;Video;")
    WEATHER = ("weather", "Science;")

    @classmethod
    def from_name(cls, name: str) -> "AppCategory":
        """Parse "DeveloperTool", "developer-tool" or "Developer Tool".

        Raises:
            ConfigurationError: If the name matches no category
        """
        wanted = "".join(char for char in name if char.isalnum()).lower()
        for category in cls:
            if category.name.replace("_", "").lower() == wanted:
                return category
        raise ConfigurationError(f"Unknown app category '{name}'")

    @property
    def macos_application_category_type(self) -> str:
        return f"public.app-category.{self.value[0]}"

    @property
    def freedesktop_categories(self) -> str:
        return self.value[1]


@dataclass(frozen=True)
class FileAssociation:
    """A document type the application registers as a handler for."""

    ext: list[str]
    name: str | None = None
    description: str | None = None
    role: str = "Editor"
    mime_type: str | None = None


@dataclass(frozen=True)
class DeepLinkProtocol:
    """URL schemes (``myapp://``) routed to the application."""

    schemes: list[str]
    name: str | None = None
    role: str = "Viewer"


@dataclass(frozen=True)
class BundleSettings:
    """Bundle configuration shared by all platform bundlers.

    ``resources`` and ``resources_map`` are mutually exclusive.
    ``external_bin`` holds sidecar base names; Settings expands them to
    their per-target file names.
    """

    identifier: str | None = None
    publisher: str | None = None
    icon: list[str] | None = None
    resources: list[str] | None = None
    resources_map: dict[str, str] | None = None
    copyright: str | None = None
    license: str | None = None
    license_file: str | None = None
    category: AppCategory | None = None
    file_associations: list[FileAssociation] | None = None
    deep_link_protocols: list[DeepLinkProtocol] | None = None
    short_description: str | None = None
    long_description: str | None = None
    external_bin: list[str] | None = None
    appimage: AppImageSettings = field(default_factory=AppImageSettings)
    dmg: DmgSettings = field(default_factory=DmgSettings)
    macos: MacOsSettings = field(default_factory=MacOsSettings)
    windows: WindowsSettings = field(default_factory=WindowsSettings)
    updater: UpdaterSettings | None = None


@dataclass(frozen=True)
class BundleBinary:
    """A compiled executable to place in the bundle."""

    name: str
    main: bool = False
    src_path: str | None = None


_HOST_ARCHS = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "i386": "i686",
    "i686": "i686",
    "x86": "i686",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "armv7l": "armv7",
    "armv7": "armv7",
}


def host_os() -> str:
    """Return the running OS as 'macos', 'linux', 'windows' or sys.platform."""
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform in ("win32", "cygwin"):
        return "windows"
    return sys.platform


def target_triple() -> str:
    """Derive the target triple of the running host.

    Raises:
        ConfigurationError: If the host architecture or OS is unknown
    """
    machine = platform.machine().lower()
    arch = _HOST_ARCHS.get(machine)
    if arch is None:
        raise ConfigurationError(f"Unable to determine target-arch: {machine}")

    os_name = host_os()
    if os_name == "macos":
        return f"{arch}-apple-darwin"
    if os_name == "linux":
        return f"{arch}-unknown-linux-gnu"
    if os_name == "windows":
        return f"{arch}-pc-windows-msvc"
    raise ConfigurationError(f"Unable to determine target-os: {os_name}")


def external_binaries(names: list[str], target: str) -> list[str]:
    """Expand sidecar base names to ``<name>-<target>[.exe]``."""
    suffix = ".exe" if "windows" in target else ""
    return [f"{name}-{target}{suffix}" for name in names]


class Settings:
    """Read-only snapshot of everything a bundling run needs.

    Instances are created by SettingsBuilder.build() and shared by every
    bundler of the run.
    """

    def __init__(
        self,
        package: PackageSettings,
        project_out_directory: Path,
        target: str,
        bundle_settings: BundleSettings,
        binaries: list[BundleBinary],
        package_types: list[PackageType] | None,
        log_level: int,
    ):
        self._package = package
        self._project_out_directory = project_out_directory
        self._target = target
        self._bundle_settings = bundle_settings
        self._binaries = tuple(binaries)
        self._package_types = (
            tuple(package_types) if package_types is not None else None
        )
        self._log_level = log_level

    def __repr__(self) -> str:
        return (
            f"<Settings '{self.product_name()}' target={self._target} "
            f"out={self._project_out_directory}>"
        )

    def log_level(self) -> int:
        """Log level for spawned commands."""
        return self._log_level

    def project_out_directory(self) -> Path:
        return self._project_out_directory

    def target(self) -> str:
        return self._target

    def target_os(self) -> str:
        """OS segment of the target triple, with darwin reported as macos."""
        return self._target.split("-")[2].replace("darwin", "macos")

    def binary_arch(self) -> str:
        """Architecture of the bundled binary (x86_64, x86, arm, ...).

        Raises:
            ConfigurationError: If the target triple has an unknown prefix
        """
        if self._target.startswith("x86_64"):
            return "x86_64"
        if self._target.startswith("i"):
            return "x86"
        if self._target.startswith("arm"):
            return "arm"
        if self._target.startswith("aarch64"):
            return "aarch64"
        if self._target.startswith("universal"):
            return "universal"
        raise ConfigurationError(f"Unexpected target triple {self._target}")

    def binaries(self) -> tuple[BundleBinary, ...]:
        return self._binaries

    def main_binary(self) -> BundleBinary:
        """Return the one binary flagged as main.

        Raises:
            ConfigurationError: If none or several binaries are main
        """
        mains = [binary for binary in self._binaries if binary.main]
        if len(mains) != 1:
            raise ConfigurationError(
                f"Expected exactly one main binary, found {len(mains)}"
            )
        return mains[0]

    def main_binary_name(self) -> str:
        return self.main_binary().name

    def binary_path(self, binary: BundleBinary) -> Path:
        if binary.src_path:
            return Path(binary.src_path)
        return self._project_out_directory / binary.name

    def package_types(self) -> list[PackageType]:
        """Package types to build for the target OS.

        The native set is {app, dmg} on macOS, {ios} on iOS, {appimage}
        on Linux and nothing on Windows, plus the updater when updates
        are enabled. An explicit request is intersected with that set,
        so unsupported types are dropped rather than rejected.

        Raises:
            ConfigurationError: If the target OS has no native bundles
        """
        target_os = self.target_os()
        if target_os == "macos":
            platform_types = [PackageType.MACOS_BUNDLE, PackageType.DMG]
        elif target_os == "ios":
            platform_types = [PackageType.IOS_BUNDLE]
        elif target_os == "linux":
            platform_types = [PackageType.APP_IMAGE]
        elif target_os == "windows":
            platform_types = []
        else:
            raise ConfigurationError(
                f"Native {target_os} bundles not yet supported."
            )

        if self.is_update_enabled():
            platform_types.append(PackageType.UPDATER)

        if self._package_types is None:
            return platform_types
        return [
            package_type
            for package_type in self._package_types
            if package_type in platform_types
        ]

    def product_name(self) -> str:
        return self._package.product_name

    def version_string(self) -> str:
        return self._package.version

    def bundle_identifier(self) -> str:
        return self._bundle_settings.identifier or ""

    def publisher(self) -> str | None:
        return self._bundle_settings.publisher

    def copyright_string(self) -> str | None:
        return self._bundle_settings.copyright

    def author_names(self) -> list[str]:
        return list(self._package.authors or [])

    def authors_comma_separated(self) -> str | None:
        names = self.author_names()
        return ", ".join(names) if names else None

    def license(self) -> str | None:
        return self._bundle_settings.license

    def license_file(self) -> Path | None:
        license_file = self._bundle_settings.license_file
        return Path(license_file) if license_file else None

    def homepage_url(self) -> str:
        return self._package.homepage or ""

    def app_category(self) -> AppCategory | None:
        return self._bundle_settings.category

    def file_associations(self) -> list[FileAssociation]:
        return list(self._bundle_settings.file_associations or [])

    def deep_link_protocols(self) -> list[DeepLinkProtocol]:
        """URL scheme handlers to register for this bundle."""
        return list(self._bundle_settings.deep_link_protocols or [])

    def short_description(self) -> str:
        return (
            self._bundle_settings.short_description
            or self._package.description
        )

    def long_description(self) -> str | None:
        return self._bundle_settings.long_description

    def icon_files(self) -> ResourcePaths:
        return ResourcePaths(self._bundle_settings.icon or [], allow_walk=False)

    def resource_files(self) -> ResourcePaths:
        resources = self._bundle_settings.resources
        resources_map = self._bundle_settings.resources_map
        if resources is not None and resources_map is not None:
            raise ConfigurationError(
                "cannot use both `resources` and `resources_map`"
            )
        if resources_map is not None:
            return ResourcePaths.from_map(resources_map, allow_walk=True)
        return ResourcePaths(resources or [], allow_walk=True)

    def external_binaries(self) -> ResourcePaths:
        return ResourcePaths(
            self._bundle_settings.external_bin or [], allow_walk=True
        )

    def copy_binaries(self, path: Pathlike) -> list[Path]:
        """Copy external binaries into path, dropping the target suffix.

        Returns:
            The destination paths
        """
        paths = []
        for resource in self.external_binaries():
            name = resource.path.name.replace(f"-{self._target}", "")
            dest = Path(path) / name
            copy_file(resource.path, dest)
            paths.append(dest)
        return paths

    def copy_resources(self, path: Pathlike) -> None:
        """Copy resource files beneath path at their target locations."""
        for resource in self.resource_files():
            copy_file(resource.path, Path(path) / resource.target)

    def appimage(self) -> AppImageSettings:
        return self._bundle_settings.appimage

    def dmg(self) -> DmgSettings:
        return self._bundle_settings.dmg

    def macos(self) -> MacOsSettings:
        return self._bundle_settings.macos

    def windows(self) -> WindowsSettings:
        return self._bundle_settings.windows

    def updater(self) -> UpdaterSettings | None:
        return self._bundle_settings.updater

    def is_update_enabled(self) -> bool:
        updater = self._bundle_settings.updater
        return bool(updater and updater.pubkey)


class SettingsBuilder:
    """Builds a validated Settings.

    Example:
        settings = (
            SettingsBuilder()
            .package_settings(PackageSettings("MyApp", "1.0.0"))
            .project_out_directory("target/release")
            .build()
        )
    """

    def __init__(self) -> None:
        self._log_level: int | None = None
        self._project_out_directory: Path | None = None
        self._package_types: list[PackageType] | None = None
        self._package_settings: PackageSettings | None = None
        self._bundle_settings = BundleSettings()
        self._binaries: list[BundleBinary] = []
        self._target: str | None = None

    def project_out_directory(self, path: Pathlike) -> "SettingsBuilder":
        self._project_out_directory = Path(path)
        return self

    def package_types(
        self, package_types: list[PackageType]
    ) -> "SettingsBuilder":
        self._package_types = list(package_types)
        return self

    def package_settings(self, settings: PackageSettings) -> "SettingsBuilder":
        self._package_settings = settings
        return self

    def bundle_settings(self, settings: BundleSettings) -> "SettingsBuilder":
        self._bundle_settings = settings
        return self

    def binaries(self, binaries: list[BundleBinary]) -> "SettingsBuilder":
        self._binaries = list(binaries)
        return self

    def target(self, target: str) -> "SettingsBuilder":
        self._target = target
        return self

    def log_level(self, level: int) -> "SettingsBuilder":
        """Set the log level for spawned commands (default: ERROR)."""
        self._log_level = level
        return self

    def build(self) -> Settings:
        """Validate the collected values and freeze them into Settings.

        Raises:
            ConfigurationError: If package settings or the output directory
                are missing, both resources and resources_map are set, or
                the target is not of the form <arch>-<vendor>-<os>[-<abi>]
        """
        if self._package_settings is None:
            raise ConfigurationError("package settings is required")
        if self._project_out_directory is None:
            raise ConfigurationError("out directory is required")

        bundle_settings = self._bundle_settings
        if (
            bundle_settings.resources is not None
            and bundle_settings.resources_map is not None
        ):
            raise ConfigurationError(
                "cannot use both `resources` and `resources_map`"
            )

        target = self._target or target_triple()
        if len(target.split("-")) < 3 or not all(target.split("-")):
            raise ConfigurationError(
                f"Invalid target triple '{target}' "
                "(expected <arch>-<vendor>-<os>[-<abi>])"
            )
        if bundle_settings.external_bin:
            bundle_settings = dataclasses.replace(
                bundle_settings,
                external_bin=external_binaries(
                    bundle_settings.external_bin, target
                ),
            )

        return Settings(
            package=self._package_settings,
            project_out_directory=self._project_out_directory,
            target=target,
            bundle_settings=bundle_settings,
            binaries=self._binaries,
            package_types=self._package_types,
            log_level=(
                self._log_level if self._log_level is not None else logging.ERROR
            ),
        )


# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .appbundler.toml in current directory
    3. appbundler.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If the file is not valid TOML

    Example appbundler.toml:
        [package]
        product_name = "MyApp"
        version = "1.0.0"

        [[binaries]]
        name = "myapp"
        main = true

        [bundle]
        identifier = "com.example.myapp"
        icon = ["icons/icon.icns", "icons/128x128.png"]
        resources = ["assets/**/*"]

        [bundle.updater]
        pubkey = "..."
    """
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore[no-redef]

    if config_path and config_path.exists():
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".appbundler.toml",
            cwd / "appbundler.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(f"Invalid config {path}: {e}") from e
            logger.debug("loaded config: %s", path)
            return data

    return {}


def get_config_section(
    config: dict[str, object], *keys: str
) -> dict[str, object]:
    """Return the nested table at config[key0][key1]..., or {}.

    Raises:
        ConfigurationError: If an intermediate value is not a table
    """
    section: object = config
    for key in keys:
        if not isinstance(section, dict):
            break
        section = section.get(key, {})
    if not isinstance(section, dict):
        raise ConfigurationError(f"[{'.'.join(keys)}] must be a table")
    return section


def _section_to(cls: type, section: object, name: str) -> object:
    """Instantiate a settings dataclass from a config table.

    Raises:
        ConfigurationError: If section is not a table, has unknown keys,
            lacks a required key or holds a value the class rejects
    """
    if not isinstance(section, dict):
        raise ConfigurationError(f"[{name}] must be a table")
    fields = dataclasses.fields(cls)
    unknown = sorted(set(section) - {f.name for f in fields})
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in [{name}]: {', '.join(unknown)}"
        )
    missing = [
        f.name
        for f in fields
        if f.name not in section
        and f.default is dataclasses.MISSING
        and f.default_factory is dataclasses.MISSING
    ]
    if missing:
        raise ConfigurationError(
            f"Missing required keys in [{name}]: {', '.join(missing)}"
        )
    try:
        return cls(**section)
    except TypeError as e:
        raise ConfigurationError(f"Invalid [{name}]: {e}") from e


def _check_list(section: dict[str, object], key: str, name: str) -> None:
    """Reject a scalar where a list of strings is expected."""
    value = section.get(key)
    if value is None:
        return
    if not isinstance(value, list) or not all(
        isinstance(item, str) for item in value
    ):
        raise ConfigurationError(f"'{key}' in [{name}] must be a list of strings")


def _tables_to(cls: type, value: object, name: str) -> list[object] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ConfigurationError(f"[[{name}]] must be an array of tables")
    return [_section_to(cls, entry, name) for entry in value]


def _dmg_from_config(section: dict[str, object]) -> DmgSettings:
    values = dict(section)
    for key in ("window_position", "app_position", "application_folder_position"):
        if key in values:
            values[key] = _section_to(Position, values[key], f"bundle.dmg.{key}")
    if "window_size" in values:
        values["window_size"] = _section_to(
            Size, values["window_size"], "bundle.dmg.window_size"
        )
    return _section_to(DmgSettings, values, "bundle.dmg")


def _bundle_from_config(config: dict[str, object]) -> BundleSettings:
    bundle_section = dict(get_config_section(config, "bundle"))
    for key in ("icon", "resources", "external_bin"):
        _check_list(bundle_section, key, "bundle")
    resources_map = bundle_section.get("resources_map")
    if resources_map is not None and not isinstance(resources_map, dict):
        raise ConfigurationError("'resources_map' in [bundle] must be a table")

    nested = {
        "macos": MacOsSettings,
        "appimage": AppImageSettings,
        "windows": WindowsSettings,
    }
    for key, cls in nested.items():
        bundle_section[key] = _section_to(
            cls, get_config_section(config, "bundle", key), f"bundle.{key}"
        )
    _check_list(
        get_config_section(config, "bundle", "macos"),
        "frameworks",
        "bundle.macos",
    )
    bundle_section["dmg"] = _dmg_from_config(
        get_config_section(config, "bundle", "dmg")
    )

    category = bundle_section.get("category")
    if category is not None:
        if not isinstance(category, str):
            raise ConfigurationError("'category' in [bundle] must be a string")
        bundle_section["category"] = AppCategory.from_name(category)

    associations = bundle_section.get("file_associations")
    for entry in associations if isinstance(associations, list) else []:
        if isinstance(entry, dict):
            _check_list(entry, "ext", "bundle.file_associations")
    bundle_section["file_associations"] = _tables_to(
        FileAssociation, associations, "bundle.file_associations"
    )
    protocols = bundle_section.get("deep_link_protocols")
    for entry in protocols if isinstance(protocols, list) else []:
        if isinstance(entry, dict):
            _check_list(entry, "schemes", "bundle.deep_link_protocols")
    bundle_section["deep_link_protocols"] = _tables_to(
        DeepLinkProtocol, protocols, "bundle.deep_link_protocols"
    )

    updater_section = get_config_section(config, "bundle", "updater")
    pubkey = updater_section.get("pubkey") or os.getenv(ENV_UPDATER_PUBKEY)
    bundle_section["updater"] = UpdaterSettings(pubkey) if pubkey else None
    return _section_to(BundleSettings, bundle_section, "bundle")


def settings_from_config(
    config: dict[str, object],
    out_dir: Pathlike,
    target: str | None = None,
    package_types: list[PackageType] | None = None,
    log_level: int | None = None,
) -> Settings:
    """Build Settings from a loaded configuration snapshot.

    Raises:
        ConfigurationError: If required keys are missing or malformed
    """
    package_section = get_config_section(config, "package")
    _check_list(package_section, "authors", "package")
    package = _section_to(PackageSettings, package_section, "package")
    bundle_settings = _bundle_from_config(config)

    binaries = _tables_to(BundleBinary, config.get("binaries"), "binaries")
    if not binaries:
        binaries = [
            BundleBinary(package.default_run or package.product_name, main=True)
        ]

    builder = (
        SettingsBuilder()
        .package_settings(package)
        .bundle_settings(bundle_settings)
        .binaries(binaries)
        .project_out_directory(out_dir)
    )
    if target:
        builder.target(target)
    if package_types is not None:
        builder.package_types(package_types)
    if log_level is not None:
        builder.log_level(log_level)
    return builder.build()


# ----------------------------------------------------------------------------
# Platform bundlers


@dataclass(frozen=True)
class Bundle:
    """A completed platform package: its type and produced artifacts."""

    package_type: PackageType
    bundle_paths: list[Path]


BUNDLERS: dict[PackageType, type["PlatformBundler"]] = {}


def register_bundler(cls: type["PlatformBundler"]) -> type["PlatformBundler"]:
    """Class decorator adding a bundler to the registry."""
    BUNDLERS[cls.package_type] = cls
    return cls


def find_bundle_path(
    bundles: list[Bundle], package_type: PackageType, suffix: str
) -> Path | None:
    """Return the first artifact of package_type ending with suffix."""
    for bundle in bundles:
        if bundle.package_type != package_type:
            continue
        for path in bundle.bundle_paths:
            if path.suffix == suffix:
                return path
    return None


class PlatformBundler:
    """Base class for producers of one package type.

    Subclasses set ``package_type`` and ``supported_hosts`` (None means
    any host) and implement bundle_project(). Output must be written
    beneath the settings' project output directory.
    """

    package_type: PackageType
    supported_hosts: set[str] | None = None

    def __init__(self, settings: Settings):
        self.settings = settings
        self.log = logging.getLogger(self.__class__.__name__)

    def is_supported(self) -> bool:
        """Whether this bundler can run on the current host."""
        return self.supported_hosts is None or host_os() in self.supported_hosts

    def bundle_project(self, bundles: list[Bundle]) -> list[Path]:
        """Produce the artifacts, given all bundles built before this one."""
        raise NotImplementedError


@register_bundler
class MacOsBundler(PlatformBundler):
    """Creates ``<out>/<ProductName>.app``.

    Layout:
        Contents/Info.plist, Contents/PkgInfo
        Contents/MacOS/       binaries and sidecars
        Contents/Resources/   resources and .icns icons
        Contents/Frameworks/  frameworks and dylibs
    """

    package_type = PackageType.MACOS_BUNDLE

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.app = (
            settings.project_out_directory() / f"{settings.product_name()}.app"
        )
        self.contents = self.app / "Contents"
        self.macos_dir = self.contents / "MacOS"
        self.resources_dir = self.contents / "Resources"
        self.frameworks_dir = self.contents / "Frameworks"

    def bundle_project(self, bundles: list[Bundle]) -> list[Path]:
        self.log.info("Bundling %s (%s)", self.app.name, self.app)
        if self.app.exists():
            shutil.rmtree(self.app)
        self.macos_dir.mkdir(parents=True)

        self.copy_binaries()
        self.settings.copy_resources(self.resources_dir)
        icon_file = self.copy_icons()
        self.copy_frameworks()
        self.copy_custom_files()
        self.create_info_plist(icon_file)
        self.create_pkg_info()

        if self.settings.macos().bundle_dylibs and host_os() == "macos":
            self.log.info("Bundling dynamic libraries for %s", self.app)
            macho_standalone.standaloneApp(str(self.app))

        return [self.app]

    def copy_binaries(self) -> None:
        """Copy compiled binaries and sidecars into Contents/MacOS."""
        for binary in self.settings.binaries():
            dest = self.macos_dir / binary.name
            copy_file(self.settings.binary_path(binary), dest)
            make_executable(dest)
        for dest in self.settings.copy_binaries(self.macos_dir):
            make_executable(dest)

    def copy_icons(self) -> str | None:
        """Copy .icns icons into Resources.

        Returns:
            File name of the first icon, for CFBundleIconFile
        """
        icon_file = None
        for icon in self.settings.icon_files():
            if icon.path.suffix != ".icns":
                self.log.debug("skipping non-icns icon: %s", icon.path)
                continue
            copy_file(icon.path, self.resources_dir / icon.path.name)
            icon_file = icon_file or icon.path.name
        return icon_file

    def copy_frameworks(self) -> None:
        """Copy configured frameworks and dylibs into Contents/Frameworks."""
        for framework in self.settings.macos().frameworks or []:
            if framework.endswith(".framework"):
                src = Path(framework)
                copy_dir(src, self.frameworks_dir / src.name)
            elif framework.endswith(".dylib"):
                src = Path(framework)
                copy_file(src, self.frameworks_dir / src.name)
            else:
                copy_dir(
                    self.find_framework(framework),
                    self.frameworks_dir / f"{framework}.framework",
                )

    def find_framework(self, name: str) -> Path:
        """Look up ``<name>.framework`` in the standard locations.

        Raises:
            ConfigurationError: If the framework cannot be found
        """
        for search_path in FRAMEWORK_SEARCH_PATHS:
            candidate = Path(search_path).expanduser() / f"{name}.framework"
            if candidate.is_dir():
                return candidate
        raise ConfigurationError(f"Could not locate framework: {name}")

    def copy_custom_files(self) -> None:
        for dest, src in self.settings.macos().files.items():
            src_path = Path(src)
            dest_path = self.contents / dest
            if src_path.is_dir():
                copy_dir(src_path, dest_path)
            else:
                copy_file(src_path, dest_path)

    def create_info_plist(self, icon_file: str | None) -> None:
        """Write Contents/Info.plist, or copy a user-provided one."""
        macos = self.settings.macos()
        info_plist = self.contents / "Info.plist"
        if macos.info_plist_path:
            copy_file(macos.info_plist_path, info_plist)
            return

        extra_entries = ""
        if self.settings.copyright_string():
            extra_entries += COPYRIGHT_PLIST_TMPL.format(
                copyright=escape(self.settings.copyright_string())
            )
        if macos.exception_domain:
            extra_entries += EXCEPTION_DOMAIN_PLIST_TMPL.format(
                domain=escape(macos.exception_domain)
            )
        category = self.settings.app_category()
        if category:
            extra_entries += CATEGORY_PLIST_TMPL.format(
                category=category.macos_application_category_type
            )
        extra_entries += self.document_types_entry()
        extra_entries += self.url_types_entry()

        content = INFO_PLIST_TMPL.format(
            bundle_name=escape(self.settings.product_name()),
            executable=escape(self.settings.main_binary_name()),
            icon_file=escape(icon_file or ""),
            bundle_identifier=escape(self.settings.bundle_identifier()),
            bundle_version=escape(self.settings.version_string()),
            min_system_version=escape(
                macos.minimum_system_version or DEFAULT_MIN_SYSTEM_VERSION
            ),
            extra_entries=extra_entries,
        )
        with create_file(info_plist) as fopen:
            fopen.write(content.encode("utf-8"))

    def document_types_entry(self) -> str:
        """CFBundleDocumentTypes for the configured file associations."""
        types = ""
        for association in self.settings.file_associations():
            extensions = "".join(
                PLIST_ARRAY_ITEM_TMPL.format(value=escape(ext))
                for ext in association.ext
            )
            types += DOCUMENT_TYPE_PLIST_TMPL.format(
                extensions=extensions,
                name=escape(association.name or ", ".join(association.ext)),
                role=escape(association.role),
            )
        if not types:
            return ""
        return PLIST_ARRAY_KEY_TMPL.format(key="CFBundleDocumentTypes", items=types)

    def url_types_entry(self) -> str:
        """CFBundleURLTypes for the configured deep link protocols."""
        types = ""
        for protocol in self.settings.deep_link_protocols():
            schemes = "".join(
                PLIST_ARRAY_ITEM_TMPL.format(value=escape(scheme))
                for scheme in protocol.schemes
            )
            types += URL_TYPE_PLIST_TMPL.format(
                name=escape(protocol.name or self.settings.bundle_identifier()),
                role=escape(protocol.role),
                schemes=schemes,
            )
        if not types:
            return ""
        return PLIST_ARRAY_KEY_TMPL.format(key="CFBundleURLTypes", items=types)

    def create_pkg_info(self) -> None:
        with create_file(self.contents / "PkgInfo") as fopen:
            fopen.write(PKG_INFO_CONTENT.encode("utf-8"))


@register_bundler
class DmgBundler(PlatformBundler):
    """Wraps the already-built .app into a compressed disk image."""

    package_type = PackageType.DMG
    supported_hosts = {"macos"}

    def bundle_project(self, bundles: list[Bundle]) -> list[Path]:
        app = find_bundle_path(bundles, PackageType.MACOS_BUNDLE, ".app")
        if app is None:
            raise UnableToFindProjectError(
                "Unable to find the .app bundle for the DMG"
            )

        out_dir = self.settings.project_out_directory()
        dmg = out_dir / (
            f"{self.settings.product_name()}_{self.settings.version_string()}"
            f"_{self.settings.binary_arch()}.dmg"
        )
        staging = self.stage(app)
        self.log.info("Bundling %s (%s)", dmg.name, dmg)
        if dmg.exists():
            dmg.unlink()

        command: list[Pathlike] = [
            "hdiutil",
            "create",
            "-volname",
            self.settings.product_name(),
            "-srcfolder",
            staging,
            "-ov",
            "-format",
            "UDZO",
        ]
        if self.settings.log_level() > logging.INFO:
            command.append("-quiet")
        command.append(dmg)

        returncode = piped(command)
        if returncode != 0:
            raise CommandError("hdiutil", returncode)
        if not dmg.exists():
            raise PackagingError(f"Failed to create DMG: {dmg}")
        shutil.rmtree(staging)
        return [dmg]

    def stage(self, app: Path) -> Path:
        """Lay out the volume contents: the app, /Applications, background."""
        staging = self.settings.project_out_directory() / "dmg-staging"
        if staging.exists():
            shutil.rmtree(staging)
        copy_dir(app, staging / app.name)
        try:
            os.symlink("/Applications", staging / "Applications")
        except OSError as e:
            raise FileError(f"Failed to link Applications in {staging}: {e}") from e

        background = self.settings.dmg().background
        if background:
            background = Path(background)
            copy_file(background, staging / ".background" / background.name)
        return staging


APPIMAGE_ARCHS = {
    "x86_64": "x86_64",
    "x86": "i686",
    "aarch64": "aarch64",
    "arm": "armhf",
}


@register_bundler
class AppImageBundler(PlatformBundler):
    """Builds an AppDir and turns it into an AppImage with appimagetool."""

    package_type = PackageType.APP_IMAGE
    supported_hosts = {"linux"}

    def __init__(self, settings: Settings):
        super().__init__(settings)
        out_dir = settings.project_out_directory()
        self.app_dir = out_dir / f"{settings.product_name()}.AppDir"
        self.appimage = out_dir / (
            f"{settings.product_name()}-{settings.version_string()}"
            f"-{settings.binary_arch()}.AppImage"
        )

    def bundle_project(self, bundles: list[Bundle]) -> list[Path]:
        if self.app_dir.exists():
            shutil.rmtree(self.app_dir)
        self.create_app_dir()

        self.log.info("Bundling %s (%s)", self.appimage.name, self.appimage)
        arch = APPIMAGE_ARCHS.get(self.settings.binary_arch())
        if arch is None:
            raise ConfigurationError(
                f"AppImage does not support {self.settings.binary_arch()}"
            )
        command: list[Pathlike] = ["appimagetool"]
        if self.settings.log_level() <= logging.DEBUG:
            command.append("--verbose")
        command.extend([self.app_dir, self.appimage])
        output_ok(command, env={**os.environ, "ARCH": arch})

        if not self.appimage.exists():
            raise PackagingError(f"Failed to create AppImage: {self.appimage}")
        return [self.appimage]

    def create_app_dir(self) -> None:
        bin_dir = self.app_dir / "usr" / "bin"
        main_name = self.settings.main_binary_name()

        for binary in self.settings.binaries():
            dest = bin_dir / binary.name
            copy_file(self.settings.binary_path(binary), dest)
            make_executable(dest)
        for dest in self.settings.copy_binaries(bin_dir):
            make_executable(dest)

        self.settings.copy_resources(self.app_dir / "usr" / "lib" / main_name)
        for dest, src in self.settings.appimage().files.items():
            copy_file(src, self.app_dir / dest.lstrip("/"))

        icon = self.copy_icon()
        with create_file(self.app_dir / f"{main_name}.desktop") as fopen:
            fopen.write(self.desktop_entry(icon).encode("utf-8"))
        try:
            os.symlink(f"usr/bin/{main_name}", self.app_dir / "AppRun")
        except OSError as e:
            raise FileError(f"Failed to create AppRun in {self.app_dir}: {e}") from e

    def desktop_entry(self, icon: Path | None) -> str:
        """Render the .desktop file.

        File association MIME types and ``x-scheme-handler/<scheme>``
        entries for deep links are listed under MimeType.
        """
        main_name = self.settings.main_binary_name()
        category = self.settings.app_category()
        mime_types = [
            association.mime_type
            for association in self.settings.file_associations()
            if association.mime_type
        ]
        for protocol in self.settings.deep_link_protocols():
            mime_types.extend(
                f"x-scheme-handler/{scheme}" for scheme in protocol.schemes
            )
        return DESKTOP_ENTRY_TMPL.format(
            categories=(
                category.freedesktop_categories
                if category
                else AppCategory.UTILITY.freedesktop_categories
            ),
            comment=self.settings.short_description(),
            executable=f"{main_name} %u" if mime_types else main_name,
            icon=icon.stem if icon else main_name,
            name=self.settings.product_name(),
            mime_type=(
                "MimeType={};\n".format(";".join(mime_types))
                if mime_types
                else ""
            ),
        )

    def copy_icon(self) -> Path | None:
        """Copy the first standard-density PNG icon to the AppDir root."""
        for icon in self.settings.icon_files():
            if icon.path.suffix == ".png" and not is_retina(icon.path):
                dest = self.app_dir / f"{self.settings.main_binary_name()}.png"
                copy_file(icon.path, dest)
                return dest
        self.log.warning("No PNG icon found for the AppImage")
        return None


@register_bundler
class UpdaterBundler(PlatformBundler):
    """Re-packages the platform bundle as an update archive.

    Locates the .app (macOS) or .AppImage (Linux) among the bundles
    already built and writes ``<artifact>.tar.gz`` next to it, keeping
    the artifact's own name as the archive root. On Linux only the
    AppImage is shipped; the updater replaces the binary and restarts.
    """

    package_type = PackageType.UPDATER

    SOURCES = {
        "macos": (PackageType.MACOS_BUNDLE, ".app"),
        "linux": (PackageType.APP_IMAGE, ".AppImage"),
    }

    def bundle_project(self, bundles: list[Bundle]) -> list[Path]:
        source = self.SOURCES.get(self.settings.target_os())
        if source is None:
            self.log.error("Current platform does not support updates")
            return []

        source_path = find_bundle_path(bundles, *source)
        if source_path is None:
            raise UnableToFindProjectError()

        archived = Path(f"{source_path}.tar.gz")
        create_tar(source_path, archived)
        self.log.info("Bundling %s (%s)", archived.name, archived)
        return [archived]


def bundle_project(settings: Settings) -> list[Bundle]:
    """Run every requested bundler once, in priority order.

    Each bundler receives the bundles produced before it. Package types
    with no bundler for this host are skipped with a warning; any other
    failure aborts the run.

    Returns:
        The produced bundles, in build order
    """
    requested = sort_package_types(settings.package_types())
    bundles: list[Bundle] = []

    for package_type in requested:
        bundler_cls = BUNDLERS.get(package_type)
        if bundler_cls is None:
            logger.warning(
                "No bundler available for '%s', skipping", package_type
            )
            continue
        bundler = bundler_cls(settings)
        if not bundler.is_supported():
            logger.warning(
                "'%s' bundles cannot be built on %s, skipping",
                package_type,
                host_os(),
            )
            continue
        paths = bundler.bundle_project(bundles)
        bundles.append(Bundle(package_type, paths))

    logger.info(
        "Built %d of %d requested package type(s)", len(bundles), len(requested)
    )
    return bundles


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
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


def _cmd_bundle(args: argparse.Namespace) -> None:
    """Handle 'bundle' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("appbundler")

    config_path = Path(args.config) if args.config else None
    if config_path and not config_path.exists():
        raise ConfigurationError(f"Config file does not exist: {config_path}")
    config = load_config(config_path)
    if not config:
        raise ConfigurationError(
            "No configuration found (expected appbundler.toml)"
        )

    package_types = None
    if args.bundles:
        package_types = [parse_package_type(name) for name in args.bundles]

    settings = settings_from_config(
        config,
        out_dir=args.out_dir,
        target=args.target or os.getenv(ENV_TARGET),
        package_types=package_types,
        log_level=logging.DEBUG if args.verbose else logging.ERROR,
    )
    log.debug("%r", settings)

    for bundle in bundle_project(settings):
        for path in bundle.bundle_paths:
            log.info("Created: %s", path)


def _cmd_archive(args: argparse.Namespace) -> None:
    """Handle 'archive' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("appbundler")

    source = Path(args.source)
    if not source.exists():
        raise FileError(f"Source does not exist: {source}")

    if args.zip:
        dest = Path(args.output) if args.output else Path(f"{source}.zip")
        create_zip(source, dest)
    else:
        dest = Path(args.output) if args.output else Path(f"{source}.tar.gz")
        create_tar(source, dest)
    log.info("Created: %s", dest)


def main() -> None:
    """Command line interface for appbundler."""
    try:
        parser = argparse.ArgumentParser(
            prog="appbundler",
            description="Bundle built executables into platform packages.",
            epilog=(
                "Examples:\n"
                "  appbundler bundle\n"
                "  appbundler bundle -b app dmg updater -o target/release\n"
                "  appbundler archive target/release/MyApp.app\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- bundle subcommand ---
        bundle_parser = subparsers.add_parser(
            "bundle",
            help="build the configured package types",
            description="Build platform packages in dependency order.",
            epilog=(
                "Examples:\n"
                "  appbundler bundle -c appbundler.toml\n"
                "  appbundler bundle -b appimage updater\n"
                "  appbundler bundle -t aarch64-apple-darwin\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        bundle_parser.add_argument(
            "-c",
            "--config",
            metavar="FILE",
            help="path to the TOML config (default: ./appbundler.toml)",
        )
        bundle_parser.add_argument(
            "-o",
            "--out-dir",
            default=".",
            metavar="DIR",
            help="directory holding the built binaries and outputs",
        )
        bundle_parser.add_argument(
            "-t",
            "--target",
            metavar="TRIPLE",
            help=f"target triple (or set {ENV_TARGET}; default: host)",
        )
        bundle_parser.add_argument(
            "-b",
            "--bundles",
            nargs="+",
            metavar="TYPE",
            help="package types to build: "
            + ", ".join(_SHORT_NAMES.values()),
        )
        _add_common_options(bundle_parser)
        bundle_parser.set_defaults(func=_cmd_bundle)

        # --- archive subcommand ---
        archive_parser = subparsers.add_parser(
            "archive",
            help="archive a file or directory as tar.gz or zip",
            description="Create a tar.gz (default) or zip of an artifact.",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        archive_parser.add_argument(
            "source",
            help="file or directory to archive",
        )
        archive_parser.add_argument(
            "-o",
            "--output",
            metavar="FILE",
            help="archive path (default: <source>.tar.gz or <source>.zip)",
        )
        archive_parser.add_argument(
            "--zip",
            action="store_true",
            help="store a single file in a zip instead of a tar.gz",
        )
        _add_common_options(archive_parser)
        archive_parser.set_defaults(func=_cmd_archive)

        args = parser.parse_args()
        args.func(args)

    except BundlerError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
