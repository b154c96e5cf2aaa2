"""Tests for the platform bundlers and the bundling scheduler."""

import logging
import os
import plistlib
import tarfile
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

import appbundler
from appbundler import (
    BUNDLERS,
    AppCategory,
    AppImageBundler,
    Bundle,
    BundleBinary,
    BundleSettings,
    CommandError,
    CommandOutput,
    DeepLinkProtocol,
    DmgBundler,
    DmgSettings,
    FileAssociation,
    MacOsBundler,
    MacOsSettings,
    PackageSettings,
    PackageType,
    PackagingError,
    SettingsBuilder,
    UnableToFindProjectError,
    UpdaterBundler,
    UpdaterSettings,
    bundle_project,
    sort_package_types,
)

MACOS_TARGET = "x86_64-apple-darwin"
LINUX_TARGET = "x86_64-unknown-linux-gnu"


@pytest.fixture
def project(tmp_path):
    """A project directory with a built binary in target/release."""
    previous = Path.cwd()
    os.chdir(tmp_path)
    out_dir = tmp_path / "target" / "release"
    out_dir.mkdir(parents=True)
    (out_dir / "myapp").write_text("#!/bin/sh\necho hello\n")
    (tmp_path / "icons").mkdir()
    (tmp_path / "icons" / "icon.icns").write_bytes(b"icns")
    (tmp_path / "icons" / "32x32.png").write_bytes(b"png32")
    (tmp_path / "icons" / "32x32@2x.png").write_bytes(b"png64")
    (tmp_path / "assets").mkdir()
    (tmp_path / "assets" / "data.txt").write_text("data")
    try:
        yield tmp_path
    finally:
        os.chdir(previous)


def make_settings(project, target=MACOS_TARGET, package_types=None, **bundle):
    bundle.setdefault("identifier", "com.example.myapp")
    bundle.setdefault("icon", ["icons/*.icns", "icons/*.png"])
    bundle.setdefault("resources", ["assets"])
    builder = (
        SettingsBuilder()
        .package_settings(PackageSettings("MyApp", "1.0.0", "My test app"))
        .project_out_directory(project / "target" / "release")
        .bundle_settings(BundleSettings(**bundle))
        .binaries([BundleBinary("myapp", main=True)])
        .target(target)
    )
    if package_types is not None:
        builder.package_types(package_types)
    return builder.build()


def fake_hdiutil(command, *args, **kwargs):
    Path(command[-1]).write_bytes(b"dmg")
    return 0


def fake_appimagetool(command, *args, **kwargs):
    Path(command[-1]).write_bytes(b"appimage")
    return CommandOutput(0, b"", b"")


class TestPackageTypeOrdering:
    def test_short_names(self):
        assert PackageType.from_short_name("app") is PackageType.MACOS_BUNDLE
        assert PackageType.from_short_name("dmg") is PackageType.DMG
        assert PackageType.from_short_name("appimage") is PackageType.APP_IMAGE
        assert PackageType.from_short_name("ios") is PackageType.IOS_BUNDLE
        assert PackageType.from_short_name("updater") is PackageType.UPDATER
        assert PackageType.from_short_name("msi") is None

    def test_short_name_round_trip(self):
        for package_type in PackageType.all():
            assert PackageType.from_short_name(package_type.short_name) is package_type

    def test_dependants_rank_after_prerequisites(self):
        assert PackageType.DMG.priority > PackageType.MACOS_BUNDLE.priority
        assert PackageType.UPDATER.priority > PackageType.DMG.priority
        assert PackageType.UPDATER.priority > PackageType.APP_IMAGE.priority

    def test_sort_is_stable_and_deduplicated(self):
        ordered = sort_package_types(
            [
                PackageType.UPDATER,
                PackageType.DMG,
                PackageType.APP_IMAGE,
                PackageType.MACOS_BUNDLE,
                PackageType.DMG,
            ]
        )
        assert ordered == [
            PackageType.APP_IMAGE,
            PackageType.MACOS_BUNDLE,
            PackageType.DMG,
            PackageType.UPDATER,
        ]

    def test_registry(self):
        assert BUNDLERS[PackageType.MACOS_BUNDLE] is MacOsBundler
        assert BUNDLERS[PackageType.DMG] is DmgBundler
        assert BUNDLERS[PackageType.APP_IMAGE] is AppImageBundler
        assert BUNDLERS[PackageType.UPDATER] is UpdaterBundler
        assert PackageType.IOS_BUNDLE not in BUNDLERS


class TestMacOsBundler:
    def test_app_layout(self, project):
        settings = make_settings(project)
        with patch("appbundler.host_os", return_value="linux"):
            paths = MacOsBundler(settings).bundle_project([])

        app = project / "target" / "release" / "MyApp.app"
        assert paths == [app]
        contents = app / "Contents"
        assert (contents / "MacOS" / "myapp").exists()
        assert os.access(contents / "MacOS" / "myapp", os.X_OK)
        assert (contents / "Resources" / "icon.icns").read_bytes() == b"icns"
        assert (contents / "Resources" / "assets" / "data.txt").read_text() == "data"
        assert (contents / "PkgInfo").read_text() == "APPL????"

    def test_info_plist(self, project):
        settings = make_settings(
            project,
            copyright="Copyright (c) Ann & Bo",
            macos=MacOsSettings(exception_domain="localhost"),
        )
        with patch("appbundler.host_os", return_value="linux"):
            MacOsBundler(settings).bundle_project([])

        plist_path = project / "target/release/MyApp.app/Contents/Info.plist"
        with open(plist_path, "rb") as f:
            plist = plistlib.load(f)
        assert plist["CFBundleExecutable"] == "myapp"
        assert plist["CFBundleIdentifier"] == "com.example.myapp"
        assert plist["CFBundleShortVersionString"] == "1.0.0"
        assert plist["CFBundleIconFile"] == "icon.icns"
        assert plist["LSMinimumSystemVersion"] == "10.13"
        assert plist["NSHumanReadableCopyright"] == "Copyright (c) Ann & Bo"
        domains = plist["NSAppTransportSecurity"]["NSExceptionDomains"]
        assert "localhost" in domains

    def test_info_plist_category_and_handlers(self, project):
        settings = make_settings(
            project,
            category=AppCategory.DEVELOPER_TOOL,
            file_associations=[
                FileAssociation(["md", "markdown"], name="Markdown"),
                FileAssociation(["txt"], role="Viewer"),
            ],
            deep_link_protocols=[DeepLinkProtocol(["myapp", "myapp-dev"])],
        )
        with patch("appbundler.host_os", return_value="linux"):
            MacOsBundler(settings).bundle_project([])

        plist_path = project / "target/release/MyApp.app/Contents/Info.plist"
        with open(plist_path, "rb") as f:
            plist = plistlib.load(f)
        assert (
            plist["LSApplicationCategoryType"]
            == "public.app-category.developer-tools"
        )
        assert plist["CFBundleDocumentTypes"] == [
            {
                "CFBundleTypeExtensions": ["md", "markdown"],
                "CFBundleTypeName": "Markdown",
                "CFBundleTypeRole": "Editor",
            },
            {
                "CFBundleTypeExtensions": ["txt"],
                "CFBundleTypeName": "txt",
                "CFBundleTypeRole": "Viewer",
            },
        ]
        assert plist["CFBundleURLTypes"] == [
            {
                "CFBundleURLName": "com.example.myapp",
                "CFBundleTypeRole": "Viewer",
                "CFBundleURLSchemes": ["myapp", "myapp-dev"],
            }
        ]

    def test_info_plist_without_handlers(self, project):
        settings = make_settings(project)
        with patch("appbundler.host_os", return_value="linux"):
            MacOsBundler(settings).bundle_project([])

        plist_path = project / "target/release/MyApp.app/Contents/Info.plist"
        with open(plist_path, "rb") as f:
            plist = plistlib.load(f)
        assert "LSApplicationCategoryType" not in plist
        assert "CFBundleDocumentTypes" not in plist
        assert "CFBundleURLTypes" not in plist

    def test_custom_info_plist(self, project):
        (project / "Info.plist").write_text("custom")
        settings = make_settings(
            project, macos=MacOsSettings(info_plist_path="Info.plist")
        )
        with patch("appbundler.host_os", return_value="linux"):
            MacOsBundler(settings).bundle_project([])
        plist_path = project / "target/release/MyApp.app/Contents/Info.plist"
        assert plist_path.read_text() == "custom"

    def test_rebuild_replaces_existing(self, project):
        settings = make_settings(project)
        stale = project / "target/release/MyApp.app/Contents/stale.txt"
        stale.parent.mkdir(parents=True)
        stale.write_text("old")
        with patch("appbundler.host_os", return_value="linux"):
            MacOsBundler(settings).bundle_project([])
        assert not stale.exists()

    def test_dylibs_bundled_on_macos_host(self, project):
        settings = make_settings(project)
        with (
            patch("appbundler.host_os", return_value="macos"),
            patch("appbundler.macho_standalone.standaloneApp") as standalone,
        ):
            MacOsBundler(settings).bundle_project([])
        standalone.assert_called_once_with(
            str(project / "target" / "release" / "MyApp.app")
        )

    def test_dylib_bundling_disabled(self, project):
        settings = make_settings(
            project, macos=MacOsSettings(bundle_dylibs=False)
        )
        with (
            patch("appbundler.host_os", return_value="macos"),
            patch("appbundler.macho_standalone.standaloneApp") as standalone,
        ):
            MacOsBundler(settings).bundle_project([])
        standalone.assert_not_called()

    def test_dylib_frameworks_copied(self, project):
        (project / "libfoo.dylib").write_bytes(b"dylib")
        settings = make_settings(
            project, macos=MacOsSettings(frameworks=["libfoo.dylib"])
        )
        with patch("appbundler.host_os", return_value="linux"):
            MacOsBundler(settings).bundle_project([])
        frameworks = project / "target/release/MyApp.app/Contents/Frameworks"
        assert (frameworks / "libfoo.dylib").read_bytes() == b"dylib"


class TestDmgBundler:
    def test_requires_app_bundle(self, project):
        settings = make_settings(project)
        with pytest.raises(UnableToFindProjectError):
            DmgBundler(settings).bundle_project([])

    def test_creates_dmg(self, project):
        settings = make_settings(
            project, dmg=DmgSettings(background="icons/32x32.png")
        )
        app = project / "target" / "release" / "MyApp.app"
        (app / "Contents").mkdir(parents=True)
        bundles = [Bundle(PackageType.MACOS_BUNDLE, [app])]

        staged = {}

        def check_staging(command, *args, **kwargs):
            staging = Path(command[command.index("-srcfolder") + 1])
            staged["app"] = (staging / "MyApp.app").is_dir()
            staged["link"] = os.readlink(staging / "Applications")
            staged["background"] = (staging / ".background" / "32x32.png").exists()
            return fake_hdiutil(command)

        with patch("appbundler.piped", side_effect=check_staging) as piped:
            paths = DmgBundler(settings).bundle_project(bundles)

        dmg = project / "target" / "release" / "MyApp_1.0.0_x86_64.dmg"
        assert paths == [dmg]
        assert dmg.exists()
        assert staged == {"app": True, "link": "/Applications", "background": True}
        command = piped.call_args[0][0]
        assert command[:2] == ["hdiutil", "create"]
        assert "UDZO" in command
        assert "-quiet" in command

    def test_hdiutil_failure(self, project):
        settings = make_settings(project)
        app = project / "target" / "release" / "MyApp.app"
        app.mkdir()
        bundles = [Bundle(PackageType.MACOS_BUNDLE, [app])]
        with patch("appbundler.piped", return_value=1):
            with pytest.raises(CommandError):
                DmgBundler(settings).bundle_project(bundles)

    def test_supported_only_on_macos(self, project):
        settings = make_settings(project)
        with patch("appbundler.host_os", return_value="linux"):
            assert not DmgBundler(settings).is_supported()
        with patch("appbundler.host_os", return_value="macos"):
            assert DmgBundler(settings).is_supported()


class TestAppImageBundler:
    def test_creates_appimage(self, project):
        settings = make_settings(project, target=LINUX_TARGET)
        with patch(
            "appbundler.output_ok", side_effect=fake_appimagetool
        ) as output_ok:
            paths = AppImageBundler(settings).bundle_project([])

        out_dir = project / "target" / "release"
        appimage = out_dir / "MyApp-1.0.0-x86_64.AppImage"
        assert paths == [appimage]

        app_dir = out_dir / "MyApp.AppDir"
        assert (app_dir / "usr" / "bin" / "myapp").exists()
        assert os.readlink(app_dir / "AppRun") == "usr/bin/myapp"
        assert (app_dir / "myapp.png").read_bytes() == b"png32"
        desktop = (app_dir / "myapp.desktop").read_text()
        assert "Exec=myapp" in desktop
        assert "Name=MyApp" in desktop
        assert (app_dir / "usr/lib/myapp/assets/data.txt").exists()

        command = output_ok.call_args[0][0]
        assert command[0] == "appimagetool"
        assert "--verbose" not in command
        assert output_ok.call_args[1]["env"]["ARCH"] == "x86_64"

    def test_desktop_entry_defaults(self, project):
        settings = make_settings(project, target=LINUX_TARGET)
        with patch("appbundler.output_ok", side_effect=fake_appimagetool):
            AppImageBundler(settings).bundle_project([])

        desktop = (
            project / "target/release/MyApp.AppDir/myapp.desktop"
        ).read_text()
        assert "Categories=Utility;\n" in desktop
        assert "MimeType" not in desktop

    def test_desktop_entry_category_and_mime_types(self, project):
        settings = make_settings(
            project,
            target=LINUX_TARGET,
            category=AppCategory.MUSIC,
            file_associations=[
                FileAssociation(["mdx"], mime_type="text/markdown"),
                FileAssociation(["raw"]),
            ],
            deep_link_protocols=[DeepLinkProtocol(["myapp"])],
        )
        with patch("appbundler.output_ok", side_effect=fake_appimagetool):
            AppImageBundler(settings).bundle_project([])

        desktop = (
            project / "target/release/MyApp.AppDir/myapp.desktop"
        ).read_text()
        assert "Categories=AudioVideo;Audio;Music;\n" in desktop
        assert "MimeType=text/markdown;x-scheme-handler/myapp;\n" in desktop
        assert "Exec=myapp %u\n" in desktop

    def test_verbose_when_debug(self, project):
        settings = (
            SettingsBuilder()
            .package_settings(PackageSettings("MyApp", "1.0.0"))
            .project_out_directory(project / "target" / "release")
            .binaries([BundleBinary("myapp", main=True)])
            .target(LINUX_TARGET)
            .log_level(logging.DEBUG)
            .build()
        )
        with patch(
            "appbundler.output_ok", side_effect=fake_appimagetool
        ) as output_ok:
            AppImageBundler(settings).bundle_project([])
        assert "--verbose" in output_ok.call_args[0][0]

    def test_missing_output(self, project):
        settings = make_settings(project, target=LINUX_TARGET)
        with patch("appbundler.output_ok", return_value=CommandOutput(0, b"", b"")):
            with pytest.raises(PackagingError):
                AppImageBundler(settings).bundle_project([])


class TestUpdaterBundler:
    def test_archives_macos_app(self, project):
        settings = make_settings(project, updater=UpdaterSettings("key"))
        app = project / "target" / "release" / "MyApp.app"
        (app / "Contents").mkdir(parents=True)
        (app / "Contents" / "PkgInfo").write_text("APPL????")
        bundles = [
            Bundle(PackageType.MACOS_BUNDLE, [app]),
            Bundle(PackageType.DMG, [project / "MyApp.dmg"]),
        ]

        paths = UpdaterBundler(settings).bundle_project(bundles)

        archive = project / "target" / "release" / "MyApp.app.tar.gz"
        assert paths == [archive]
        with tarfile.open(archive, "r:gz") as tar:
            assert "MyApp.app/Contents/PkgInfo" in tar.getnames()

    def test_archives_appimage(self, project):
        settings = make_settings(
            project, target=LINUX_TARGET, updater=UpdaterSettings("key")
        )
        appimage = project / "MyApp-1.0.0-x86_64.AppImage"
        appimage.write_bytes(b"appimage")
        bundles = [Bundle(PackageType.APP_IMAGE, [appimage])]

        paths = UpdaterBundler(settings).bundle_project(bundles)

        assert paths == [Path(f"{appimage}.tar.gz")]
        with tarfile.open(paths[0], "r:gz") as tar:
            assert tar.getnames() == ["MyApp-1.0.0-x86_64.AppImage"]

    def test_missing_project(self, project):
        settings = make_settings(project, updater=UpdaterSettings("key"))
        with pytest.raises(
            UnableToFindProjectError,
            match="Unable to find a bundled project for the updater",
        ):
            UpdaterBundler(settings).bundle_project([])

    def test_unsupported_platform(self, project, caplog):
        settings = make_settings(
            project, target="x86_64-pc-windows-msvc", updater=UpdaterSettings("key")
        )
        with caplog.at_level(logging.ERROR):
            assert UpdaterBundler(settings).bundle_project([]) == []
        assert "does not support updates" in caplog.text


class TestBundleProject:
    def test_builds_in_dependency_order(self, project):
        settings = make_settings(
            project,
            updater=UpdaterSettings("key"),
            package_types=[
                PackageType.UPDATER,
                PackageType.DMG,
                PackageType.MACOS_BUNDLE,
            ],
        )
        with (
            patch("appbundler.host_os", return_value="macos"),
            patch("appbundler.macho_standalone.standaloneApp"),
            patch("appbundler.piped", side_effect=fake_hdiutil),
        ):
            bundles = bundle_project(settings)

        out_dir = project / "target" / "release"
        assert [b.package_type for b in bundles] == [
            PackageType.MACOS_BUNDLE,
            PackageType.DMG,
            PackageType.UPDATER,
        ]
        assert bundles[0].bundle_paths == [out_dir / "MyApp.app"]
        assert bundles[1].bundle_paths == [out_dir / "MyApp_1.0.0_x86_64.dmg"]
        assert bundles[2].bundle_paths == [out_dir / "MyApp.app.tar.gz"]

    def test_unsupported_host_skipped(self, project, caplog):
        settings = make_settings(project, updater=UpdaterSettings("key"))
        with (
            patch("appbundler.host_os", return_value="linux"),
            patch("appbundler.piped") as piped,
            caplog.at_level(logging.WARNING),
        ):
            bundles = bundle_project(settings)

        piped.assert_not_called()
        assert [b.package_type for b in bundles] == [
            PackageType.MACOS_BUNDLE,
            PackageType.UPDATER,
        ]
        assert "dmg" in caplog.text

    def test_first_failure_aborts(self, project):
        settings = make_settings(project, updater=UpdaterSettings("key"))
        with (
            patch("appbundler.host_os", return_value="macos"),
            patch("appbundler.macho_standalone.standaloneApp"),
            patch("appbundler.piped", return_value=1),
        ):
            with pytest.raises(CommandError):
                bundle_project(settings)
        assert not (project / "target/release/MyApp.app.tar.gz").exists()

    def test_ios_has_no_bundler(self, project, caplog):
        settings = make_settings(project, target="aarch64-apple-ios")
        with caplog.at_level(logging.WARNING):
            assert bundle_project(settings) == []
        assert "ios" in caplog.text

    def test_bundler_receives_previous_bundles(self, project):
        seen = []

        class RecordingBundler(appbundler.PlatformBundler):
            package_type = PackageType.APP_IMAGE

            def bundle_project(self, bundles):
                seen.append(list(bundles))
                return [Path("out.AppImage")]

        class RecordingUpdater(appbundler.PlatformBundler):
            package_type = PackageType.UPDATER

            def bundle_project(self, bundles):
                seen.append(list(bundles))
                return []

        settings = make_settings(
            project, target=LINUX_TARGET, updater=UpdaterSettings("key")
        )
        registry = {
            PackageType.APP_IMAGE: RecordingBundler,
            PackageType.UPDATER: RecordingUpdater,
        }
        with patch.dict(appbundler.BUNDLERS, registry):
            bundle_project(settings)

        assert seen[0] == []
        assert seen[1] == [Bundle(PackageType.APP_IMAGE, [Path("out.AppImage")])]
