#!/usr/bin/env python3
"""macnotarize - notarize macOS application bundles.

This module drives Apple's command line tools, in a fixed order, to turn a
built .app bundle into one that Gatekeeper accepts without warnings:

1. codesign the bundle (hardened runtime, secure timestamp, deep, forced)
   with a fixed entitlements descriptor
2. zip the signed bundle with ditto
3. submit the zip with `xcrun notarytool submit --wait`
4. staple the issued ticket onto the bundle with `xcrun stapler staple`

The first failing step aborts the run. A scoped temporary working
directory holds the entitlements file and the zip archive and is removed
on every exit path.

Usage (API):
    from macnotarize import NotarizeOptions, notarize

    options = NotarizeOptions(
        email="jane@example.com",
        developer_name="Developer ID Application: Jane Doe (ABCDE12345)",
        team_id="ABCDE12345",
        app_password="abcd-efgh-ijkl-mnop",
        progress_output=sys.stdout,
    )
    notarize("dist/MyApp.app", options)
"""

import codecs
import datetime
import logging
import os
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import TextIO

from dotenv import load_dotenv

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Environment variable names
ENV_DEV_ID = "DEV_ID"

# Replacement for credentials in logged commands
MASK = "********"

# Prefix of the per-run working directory
WORKDIR_PREFIX = "macnotarize-"

ENTITLEMENTS_FILENAME = "entitlements.plist"

# Read size for streamed tool output
CHUNK_SIZE = 4096

# Executables used by each step, overridable via the [tools] config section
DEFAULT_TOOLS = {
    "codesign": "codesign",
    "ditto": "ditto",
    "xcrun": "xcrun",
}

ENTITLEMENTS_PLIST = """\
<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
  <dict>
    <key>com.apple.security.cs.disable-library-validation</key>
    <true/>
    <key>com.apple.security.cs.allow-dyld-environment-variables</key>
    <true/>
  </dict>
</plist>"""

load_dotenv()

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macnotarize.toml in current directory
    3. macnotarize.toml in current directory

    Credentials (Apple ID, team ID, app-specific password) are never read
    from the config file; callers pass them in NotarizeOptions.

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Example .macnotarize.toml:
        [notarize]
        developer_name = "Developer ID Application: Jane Doe (ABCDE12345)"

        [tools]
        xcrun = "/Applications/Xcode.app/Contents/Developer/usr/bin/xcrun"
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
            cwd / ".macnotarize.toml",
            cwd / "macnotarize.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
                return data
            except (OSError, tomllib.TOMLDecodeError):
                continue

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "notarize", "tools")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


# Global config (loaded lazily)
_config: dict[str, object] | None = None


def get_config() -> dict[str, object]:
    """Get the global configuration, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


# ----------------------------------------------------------------------------
# Error handling


class NotarizeError(Exception):
    """Base exception class for macnotarize errors."""


class CommandError(NotarizeError):
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


class ConfigurationError(NotarizeError):
    """Exception raised when options are missing or invalid."""


class SetupError(NotarizeError):
    """Exception raised when the working directory cannot be prepared."""


class StepError(NotarizeError):
    """Exception raised when one of the external tools exits non-zero.

    The message carries the tool's captured standard error verbatim.
    """

    step = "step"

    def __init__(self, returncode: int, output: str | None = None):
        self.returncode = returncode
        self.output = output or ""
        super().__init__(
            f"notarize: {self.step} failed: "
            f"exit status {returncode}: {self.output}"
        )


class CodesignError(StepError):
    """Exception raised when codesigning fails."""

    step = "codesign"


class ArchiveError(StepError):
    """Exception raised when ditto cannot create the archive."""

    step = "ditto"


class SubmissionError(StepError):
    """Exception raised when notarytool fails or Apple rejects the upload."""

    step = "xcrun notarytool"


class StapleError(StepError):
    """Exception raised when stapling the ticket fails."""

    step = "xcrun stapler"


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
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
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
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def mask_command(command: list[str], secrets: tuple[str, ...] = ()) -> str:
    """Join a command for display, replacing any secret argument with MASK."""
    return " ".join(MASK if part in secrets else part for part in command)


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
    secrets: tuple[str, ...] = (),
) -> str:
    """Run a command, capturing its output, and return its stdout.

    Uses shell=False. Output is decoded as UTF-8 with invalid bytes
    replaced. Arguments listed in `secrets` never appear in log
    records or in the raised CommandError.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output
        secrets: Argument values to mask when displaying the command

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = mask_command(command, secrets)
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    try:
        result = subprocess.run(
            command,
            shell=False,
            check=True,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
        )
        return result.stdout
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, str(e)) from e
    except PermissionError as e:
        raise CommandError(cmd_str, 126, str(e)) from e
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e


def stream_command(
    command: list[str],
    output: TextIO | None = None,
    dry_run: bool = False,
    log: logging.Logger | None = None,
    secrets: tuple[str, ...] = (),
) -> None:
    """Run a command, streaming its stdout live and capturing its stderr.

    Stdout is written to `output` chunk by chunk as the process emits it,
    without newline translation, so carriage-return progress redraws
    arrive unchanged; with no output it is read and dropped. Both streams
    are decoded as UTF-8 with invalid bytes replaced. Stderr is drained
    by a helper thread so neither pipe can fill up and stall the process.

    Args:
        command: The command as a list of arguments
        output: Sink with a write() method for stdout text (None discards
            it); flushed after each chunk when it has flush()
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output
        secrets: Argument values to mask when displaying the command

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = mask_command(command, secrets)
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return
    try:
        process = subprocess.Popen(
            command,
            shell=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, str(e)) from e
    except PermissionError as e:
        raise CommandError(cmd_str, 126, str(e)) from e

    flush = getattr(output, "flush", None)
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    stderr_chunks: list[bytes] = []
    with process:
        stdout, stderr = process.stdout, process.stderr
        reader = threading.Thread(
            target=lambda: stderr_chunks.append(stderr.read()),  # type: ignore[union-attr]
            daemon=True,
        )
        reader.start()
        for chunk in iter(lambda: stdout.read1(CHUNK_SIZE), b""):  # type: ignore[union-attr]
            text = decoder.decode(chunk)
            if output is not None and text:
                output.write(text)
                if flush is not None:
                    flush()
        tail = decoder.decode(b"", final=True)
        if output is not None and tail:
            output.write(tail)
        reader.join()

    if process.returncode != 0:
        raise CommandError(
            cmd_str,
            process.returncode,
            b"".join(stderr_chunks).decode("utf-8", errors="replace"),
        )


def archive_name(app_path: Pathlike) -> str:
    """Return the zip name for a bundle: its base name with the last
    extension replaced by .zip (My.App.app -> My.App.zip)."""
    return f"{Path(app_path).stem}.zip"


# ----------------------------------------------------------------------------
# Notarization


class NotarizeOptions:
    """Credentials and output settings for one notarization run.

    Args:
        email: Apple ID email address
        developer_name: signing identity (certificate common name), passed
            verbatim to codesign
        team_id: Apple developer team ID
        app_password: app-specific password for the Apple ID
            (see https://support.apple.com/en-us/102654)
        progress_output: object with a write() method receiving notarytool
            and stapler progress text (None discards it)

    Environment Variables:
        DEV_ID: signing identity (fallback if developer_name not provided)
    """

    def __init__(
        self,
        email: str = "",
        developer_name: str | None = None,
        team_id: str = "",
        app_password: str = "",
        progress_output: TextIO | None = None,
    ) -> None:
        self.email = email
        self.team_id = team_id
        self.app_password = app_password
        self.progress_output = progress_output

        # Resolve signing identity from parameter, environment, then config
        if not developer_name:
            developer_name = os.getenv(ENV_DEV_ID) or get_config_value(
                get_config(), "notarize", "developer_name"
            )
        self.developer_name = developer_name or ""

    @property
    def secrets(self) -> tuple[str, ...]:
        """Values that must never appear in logs or error messages."""
        return tuple(
            s for s in (self.email, self.team_id, self.app_password) if s
        )

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(email={MASK!r}, "
            f"developer_name={self.developer_name!r}, team_id={MASK!r}, "
            f"app_password={MASK!r})"
        )


class Notarizer:
    """Signs, archives, notarizes and staples a macOS .app bundle.

    Steps run strictly in order and the first failure aborts the run:
    1. Write the fixed entitlements descriptor to a working directory
    2. Sign the bundle with codesign
    3. Create a zip archive of the bundle with ditto
    4. Submit the archive with notarytool and wait for Apple's verdict
    5. Staple the ticket onto the bundle

    Signing and stapling modify the bundle in place; a failure in a later
    step does not undo them. Running the whole sequence again is safe.

    Args:
        path: Path to the .app bundle
        options: NotarizeOptions with credentials and progress output
        tools: Optional mapping overriding the codesign/ditto/xcrun
            executables (falls back to the [tools] config section)
        dry_run: If True, log the commands without executing them

    Example:
        notarizer = Notarizer("MyApp.app", options)
        notarizer.process()
    """

    def __init__(
        self,
        path: Pathlike,
        options: NotarizeOptions,
        tools: dict[str, str] | None = None,
        dry_run: bool = False,
    ) -> None:
        self.path = Path(path)
        self.options = options
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

        for field in ("email", "developer_name", "team_id", "app_password"):
            if not getattr(options, field):
                raise ConfigurationError(
                    f"Notarization option '{field}' must not be empty"
                )

        config = get_config()
        tools = tools or {}
        self.tools = {
            name: tools.get(name)
            or get_config_value(config, "tools", name, default)
            or default
            for name, default in DEFAULT_TOOLS.items()
        }

    def run_command(self, command: list[str]) -> str:
        """Run a command with captured output."""
        return run_command(
            command,
            dry_run=self.dry_run,
            log=self.log,
            secrets=self.options.secrets,
        )

    def stream_command(self, command: list[str]) -> None:
        """Run a command, streaming its stdout to the progress output."""
        stream_command(
            command,
            output=self.options.progress_output,
            dry_run=self.dry_run,
            log=self.log,
            secrets=self.options.secrets,
        )

    def write_entitlements(self, workdir: Path) -> Path:
        """Write the entitlements descriptor into workdir.

        Raises:
            SetupError: If the file cannot be written
        """
        entitlements = workdir / ENTITLEMENTS_FILENAME
        try:
            entitlements.write_text(ENTITLEMENTS_PLIST)
        except OSError as e:
            raise SetupError(
                f"Cannot write entitlements to {entitlements}: {e}"
            ) from e
        return entitlements

    def sign_bundle(self, entitlements: Path) -> None:
        """Sign the bundle with hardened runtime and the given entitlements."""
        self.log.info(
            "signing: %s as %s", self.path, self.options.developer_name
        )
        command = [
            self.tools["codesign"],
            "--display",
            "--verbose",
            "--verify",
            "--sign",
            self.options.developer_name,
            "--timestamp",
            "--options",
            "runtime",
            "--force",
            "--entitlements",
            str(entitlements),
            "--deep",
            str(self.path),
        ]
        try:
            self.run_command(command)
        except CommandError as e:
            raise CodesignError(e.returncode, e.output) from e

    def create_archive(self, workdir: Path) -> Path:
        """Zip the bundle into workdir, keeping it as the top-level entry.

        Returns:
            Path to the created zip archive
        """
        archive = workdir / archive_name(self.path)
        self.log.info("archiving: %s -> %s", self.path, archive)
        command = [
            self.tools["ditto"],
            "-c",
            "-k",
            "--keepParent",
            str(self.path),
            str(archive),
        ]
        try:
            self.run_command(command)
        except CommandError as e:
            raise ArchiveError(e.returncode, e.output) from e
        return archive

    def submit_archive(self, archive: Path) -> None:
        """Submit the archive to Apple and wait until processing finishes.

        Raises:
            SubmissionError: If the upload fails or Apple rejects it
        """
        self.log.info("submitting: %s", archive)
        command = [
            self.tools["xcrun"],
            "notarytool",
            "submit",
            str(archive),
            "--apple-id",
            self.options.email,
            "--password",
            self.options.app_password,
            "--team-id",
            self.options.team_id,
            "--wait",
        ]
        try:
            self.stream_command(command)
        except CommandError as e:
            raise SubmissionError(e.returncode, e.output) from e

    def staple_bundle(self) -> None:
        """Staple the notarization ticket onto the bundle."""
        self.log.info("stapling: %s", self.path)
        command = [self.tools["xcrun"], "stapler", "staple", str(self.path)]
        try:
            self.stream_command(command)
        except CommandError as e:
            raise StapleError(e.returncode, e.output) from e

    def process(self) -> Path:
        """Execute the full notarization workflow.

        Returns:
            Path to the notarized bundle

        Raises:
            SetupError: If the working directory cannot be prepared
            StepError: If one of the external tools fails
        """
        self.log.info("Starting notarization workflow for %s", self.path)
        try:
            workdir = tempfile.TemporaryDirectory(prefix=WORKDIR_PREFIX)
        except OSError as e:
            raise SetupError(f"Cannot create working directory: {e}") from e

        with workdir as tmp:
            tmp_path = Path(tmp)
            entitlements = self.write_entitlements(tmp_path)
            self.sign_bundle(entitlements)
            archive = self.create_archive(tmp_path)
            self.submit_archive(archive)
            self.staple_bundle()

        self.log.info("Notarization complete: %s", self.path)
        return self.path


# ----------------------------------------------------------------------------
# Functional API


def notarize(
    app_path: Pathlike,
    options: NotarizeOptions,
    dry_run: bool = False,
) -> Path:
    """Notarize the .app bundle at app_path.

    This is a convenience function that creates a Notarizer instance
    and calls process() on it.

    Args:
        app_path: Path to the .app directory
        options: NotarizeOptions with credentials and progress output
        dry_run: If True, only log what would be run

    Returns:
        Path to the notarized bundle

    Example:
        notarize("MyApp.app", NotarizeOptions(...))
    """
    notarizer = Notarizer(app_path, options, dry_run=dry_run)
    return notarizer.process()
