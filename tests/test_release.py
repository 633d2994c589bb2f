"""Tests for the release workflow (credentials, bundle lookup, sign_release)."""

import plistlib
import subprocess
import textwrap
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from macsigner import (
    CodesignError,
    ConfigurationError,
    Credentials,
    find_app_bundle,
    sign_release,
)

MACHO_MAGIC_64 = b"\xfe\xed\xfa\xcf"
FINGERPRINT = "0123456789ABCDEF0123456789ABCDEF01234567"

SIGNING_CONFIG = textwrap.dedent(
    """\
    entitlements:
      default:
      - com.apple.security.cs.allow-jit
      overrides:
      - paths:
        - Contents/Resources/bin/tool
        entitlements:
        - com.apple.security.inherit
    constraints:
    - paths:
      - Contents/Resources/bin/tool
      parent:
        team-identifier: ${AC_TEAMID}
    remove:
    - Contents/Resources/unused.txt
    """
)

PACKAGING_CONFIG = textwrap.dedent(
    """\
    appId: io.rancherdesktop.app
    productName: Rancher Desktop
    mac:
      identity: Someone
    """
)

ENVIRON = {
    "CSC_FINGERPRINT": FINGERPRINT,
    "APPLEID": "dev@example.com",
    "AC_PASSWORD": "secret-password",
    "AC_TEAMID": "TEAM123456",
}


@pytest.fixture
def work_dir(tmp_path):
    """Create a work directory with an unpacked, unsigned application."""
    app = tmp_path / "unpacked" / "Rancher Desktop.app"
    contents = app / "Contents"
    for binary in ("MacOS/Rancher Desktop", "MacOS/helper", "Resources/bin/tool"):
        path = contents / binary
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(MACHO_MAGIC_64 + b"\x00" * 32)
    (contents / "Resources" / "unused.txt").write_text("unused")
    (contents / "build").mkdir()
    (contents / "build" / "signing-config-mac.yaml").write_text(SIGNING_CONFIG)
    (contents / "electron-builder.yml").write_text(PACKAGING_CONFIG)
    with open(contents / "Info.plist", "wb") as f:
        plistlib.dump({"CFBundleShortVersionString": "1.9.0"}, f)
    return tmp_path


class FakeTools:
    """Stand-in for subprocess.run covering every external tool."""

    def __init__(self, fail_verify=False):
        self.fail_verify = fail_verify
        self.commands: list[list[str]] = []

    def __call__(self, command, **kwargs):
        self.commands.append(command)
        if "--test-requirement=anchor apple" in command:
            raise subprocess.CalledProcessError(1, command, stderr="not signed")
        if "--deep" in command and self.fail_verify:
            raise subprocess.CalledProcessError(3, command, stderr="invalid")
        if command[0] == "ditto" or command[:2] == ["hdiutil", "create"]:
            Path(command[-1]).write_bytes(b"archive")
        return MagicMock(returncode=0, stdout="", stderr="")

    def tools(self):
        return [c[0] if c[0] != "xcrun" else c[1] for c in self.commands]


class TestCredentials:
    """Tests for Credentials.from_env()."""

    def test_all_present(self):
        credentials = Credentials.from_env(ENVIRON)
        assert credentials.fingerprint == FINGERPRINT
        assert credentials.can_notarize

    @pytest.mark.parametrize("value", [None, ""])
    def test_fingerprint_required(self, value):
        environ = dict(ENVIRON)
        if value is None:
            del environ["CSC_FINGERPRINT"]
        else:
            environ["CSC_FINGERPRINT"] = value
        with pytest.raises(ConfigurationError, match="CSC_FINGERPRINT"):
            Credentials.from_env(environ)

    @pytest.mark.parametrize("missing", ["APPLEID", "AC_PASSWORD", "AC_TEAMID"])
    def test_partial_notarization_credentials(self, missing):
        environ = {k: v for k, v in ENVIRON.items() if k != missing}
        assert not Credentials.from_env(environ).can_notarize

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("CSC_FINGERPRINT", "ENVPRINT")
        assert Credentials.from_env().fingerprint == "ENVPRINT"


class TestFindAppBundle:
    """Tests for find_app_bundle()."""

    def test_single_app(self, work_dir):
        app = find_app_bundle(work_dir / "unpacked")
        assert app.name == "Rancher Desktop.app"

    def test_explicit_name(self, work_dir):
        app = find_app_bundle(work_dir / "unpacked", "Rancher Desktop.app")
        assert app == work_dir / "unpacked" / "Rancher Desktop.app"

    def test_explicit_name_missing(self, work_dir):
        with pytest.raises(ConfigurationError, match="not found"):
            find_app_bundle(work_dir / "unpacked", "Other.app")

    def test_ambiguous(self, work_dir):
        (work_dir / "unpacked" / "Other.app").mkdir()
        with pytest.raises(ConfigurationError, match="found 2"):
            find_app_bundle(work_dir / "unpacked")


class TestSignRelease:
    """Tests for sign_release()."""

    def test_full_release(self, work_dir):
        fake = FakeTools()
        with patch("subprocess.run", side_effect=fake), patch(
            "macsigner.ProgressSpinner"
        ):
            dmg = sign_release(work_dir, environ=ENVIRON)

        assert dmg == work_dir / "dist" / "Rancher.Desktop-1.9.0.x86_64.dmg"
        assert dmg.exists()
        tools = fake.tools()
        assert tools.index("notarytool") > tools.index("codesign")
        assert tools.index("hdiutil") > tools.index("stapler")
        assert fake.commands[-1] == [
            "codesign", "--sign", FINGERPRINT, "--timestamp", str(dmg),
        ]
        app = work_dir / "unpacked" / "Rancher Desktop.app"
        assert not (app / "Contents" / "Resources" / "unused.txt").exists()

    def test_arm64_artifact(self, work_dir):
        environ = dict(ENVIRON, M1="1")
        with patch("subprocess.run", side_effect=FakeTools()), patch(
            "macsigner.ProgressSpinner"
        ):
            dmg = sign_release(work_dir, environ=environ)
        assert dmg.name == "Rancher.Desktop-1.9.0.aarch64.dmg"

    def test_skip_notarize(self, work_dir, caplog):
        environ = {"CSC_FINGERPRINT": FINGERPRINT}
        fake = FakeTools()
        with patch("subprocess.run", side_effect=fake):
            with caplog.at_level("WARNING"):
                sign_release(work_dir, skip_notarize=True, environ=environ)
        assert "Skipping notarization" in caplog.text
        assert "notarytool" not in fake.tools()

    def test_missing_notarization_credentials(self, work_dir):
        environ = {"CSC_FINGERPRINT": FINGERPRINT, "APPLEID": "dev@example.com"}
        with patch("subprocess.run") as mock_run:
            with pytest.raises(ConfigurationError, match="cannot notarize"):
                sign_release(work_dir, environ=environ)
        mock_run.assert_not_called()
        unused = work_dir / "unpacked" / "Rancher Desktop.app" / "Contents" / "Resources" / "unused.txt"
        assert unused.exists()

    def test_missing_fingerprint(self, work_dir):
        with patch("subprocess.run") as mock_run:
            with pytest.raises(ConfigurationError, match="CSC_FINGERPRINT"):
                sign_release(work_dir, skip_notarize=True, environ={})
        mock_run.assert_not_called()

    def test_verification_failure_stops_release(self, work_dir):
        fake = FakeTools(fail_verify=True)
        with patch("subprocess.run", side_effect=fake):
            with pytest.raises(CodesignError):
                sign_release(work_dir, environ=ENVIRON)
        assert "notarytool" not in fake.tools()
        assert "hdiutil" not in fake.tools()
