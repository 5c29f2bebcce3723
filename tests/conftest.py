"""Shared fixtures: config isolation and fake Apple command line tools."""

import sys
import tempfile
from pathlib import Path

import pytest

import macnotarize

FAKE_CODESIGN = """\
#!/bin/sh
echo "codesign $*" >> "{log}"
{fail}
while [ $# -gt 1 ]; do
    if [ "$1" = "--entitlements" ]; then
        cp "$2" "{seen}"
    fi
    shift
done
if [ ! -e "$1" ]; then
    echo "$1: No such file or directory" >&2
    exit 1
fi
"""

FAKE_DITTO = """\
#!/bin/sh
echo "ditto $*" >> "{log}"
{fail}
for last; do :; done
: > "$last"
"""

FAKE_XCRUN = """\
#!/bin/sh
echo "xcrun $*" >> "{log}"
{fail}
if [ "$1" = "notarytool" ]; then
    echo "Conducting pre-submission checks for $3"
    echo "  status: In Progress"
    echo "Processing complete"
    echo "  status: Accepted"
else
    echo "Processing: $3"
    echo "The staple and validate action worked!"
fi
"""

FAIL_CLAUSE = """\
if [ "{when}" = "" ] || [ "$1" = "{when}" ]; then
    echo "{message}" >&2
    exit {code}
fi
"""

TEMPLATES = {
    "codesign": FAKE_CODESIGN,
    "ditto": FAKE_DITTO,
    "xcrun": FAKE_XCRUN,
}


class FakeTools:
    """Shell-script stand-ins for codesign, ditto and xcrun.

    Every invocation appends its argv to a log file so tests can assert
    which tools ran and with which arguments.
    """

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir()
        self.log = root / "calls.log"
        self.seen_entitlements = root / "seen-entitlements.plist"
        self.tools: dict[str, str] = {}
        for name in TEMPLATES:
            self.install(name)

    def install(self, name: str, fail: str = "") -> None:
        script = self.root / name
        script.write_text(
            TEMPLATES[name].format(
                log=self.log, seen=self.seen_entitlements, fail=fail
            )
        )
        script.chmod(0o755)
        self.tools[name] = str(script)

    def fail(
        self, name: str, message: str, when: str = "", code: int = 1
    ) -> None:
        """Make a tool exit with `code` after printing `message` to stderr.

        With `when`, only invocations whose first argument equals it fail.
        """
        self.install(
            name,
            FAIL_CLAUSE.format(when=when, message=message, code=code),
        )

    def calls(self) -> list[str]:
        if not self.log.exists():
            return []
        return self.log.read_text().splitlines()

    def called(self, prefix: str) -> bool:
        return any(call.startswith(prefix) for call in self.calls())


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Keep tests independent of the developer's .env, DEV_ID and config."""
    monkeypatch.delenv("DEV_ID", raising=False)
    monkeypatch.setattr(macnotarize, "_config", {})


@pytest.fixture
def workroot(tmp_path, monkeypatch):
    """Directory under which the notarizer creates its working directory."""
    root = tmp_path / "work"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root


@pytest.fixture
def fake_tools(tmp_path):
    if sys.platform == "win32":
        pytest.skip("fake tools are POSIX shell scripts")
    return FakeTools(tmp_path / "bin")


@pytest.fixture
def sample_bundle(tmp_path):
    """Create a minimal Foo.app bundle."""
    bundle = tmp_path / "Foo.app"
    macos = bundle / "Contents" / "MacOS"
    macos.mkdir(parents=True)
    exe = macos / "Foo"
    exe.write_bytes(b"#!/bin/sh\necho hello")
    exe.chmod(0o755)
    return bundle


@pytest.fixture
def options():
    return macnotarize.NotarizeOptions(
        email="jane@example.com",
        developer_name="Developer ID Application: X",
        team_id="ABCDE12345",
        app_password="abcd-efgh-ijkl-mnop",
    )
