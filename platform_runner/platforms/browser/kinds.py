"""How to launch each supported browser."""

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from yarl import URL

from platform_runner.models.platform import OperatingSystem

type ArgumentBuilder = Callable[[URL, Path, bool], Sequence[str]]


@dataclass(frozen=True, kw_only=True)
class BrowserKind:
    """Executable defaults and command line of one kind of browser.

    `build_arguments(url, directory, headless)` returns the arguments that
    open `url`, given a fresh private `directory` the browser may use for its
    profile and any files it needs.
    """

    name: str
    linux_executable: str
    mac_os_executable: str
    windows_executable: str
    build_arguments: ArgumentBuilder

    def default_executable(self, os: OperatingSystem | None = None) -> str:
        match os or OperatingSystem.current():
            case OperatingSystem.MACOS:
                return self.mac_os_executable
            case OperatingSystem.WINDOWS:
                return self.windows_executable
            case _:
                return self.linux_executable


def _chrome_arguments(url: URL, directory: Path, headless: bool) -> Sequence[str]:
    arguments = [
        f"--user-data-dir={directory}",
        "--disable-extensions",
        "--disable-popup-blocking",
        "--bwsi",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-default-apps",
        "--disable-translate",
    ]
    if headless:
        arguments += ["--headless", "--disable-gpu"]
    return [*arguments, str(url)]


def _chrome_wasm_arguments(url: URL, directory: Path, headless: bool) -> Sequence[str]:
    *arguments, target = _chrome_arguments(url, directory, headless)
    return [*arguments, "--js-flags=--experimental-wasm-gc", target]


_FIREFOX_PREFERENCES = """\
user_pref("browser.shell.checkDefaultBrowser", false);
user_pref("dom.disable_open_during_load", false);
user_pref("dom.max_script_run_time", 0);
user_pref("datareporting.policy.dataSubmissionEnabled", false);
"""


def _firefox_arguments(url: URL, directory: Path, headless: bool) -> Sequence[str]:
    (directory / "user.js").write_text(_FIREFOX_PREFERENCES)
    arguments = ["--profile", str(directory), "--no-remote"]
    if headless:
        arguments.append("--headless")
    return [*arguments, str(url)]


def _safari_arguments(url: URL, directory: Path, headless: bool) -> Sequence[str]:
    # Safari only opens files from its command line, so redirect from one.
    redirect = directory / "redirect.html"
    redirect.write_text(
        f"<script>location = {str(url)!r};</script>\n", encoding="utf-8"
    )
    return [str(redirect)]


def _internet_explorer_arguments(
    url: URL, directory: Path, headless: bool
) -> Sequence[str]:
    return ["-extoff", str(url)]


def _phantom_js_arguments(url: URL, directory: Path, headless: bool) -> Sequence[str]:
    script = directory / "runner.js"
    script.write_text(
        "var page = require('webpage').create();\n"
        f"page.open({str(url)!r});\n"
        "page.onConsoleMessage = function(message) { console.log(message); };\n",
        encoding="utf-8",
    )
    return [str(script)]


BROWSER_KINDS: Mapping[str, BrowserKind] = {
    "chrome": BrowserKind(
        name="Chrome",
        linux_executable="google-chrome",
        mac_os_executable=(
            "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"
        ),
        windows_executable=r"Google\Chrome\Application\chrome.exe",
        build_arguments=_chrome_arguments,
    ),
    "experimental-chrome-wasm": BrowserKind(
        name="ExperimentalChromeWasm",
        linux_executable="google-chrome",
        mac_os_executable=(
            "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"
        ),
        windows_executable=r"Google\Chrome\Application\chrome.exe",
        build_arguments=_chrome_wasm_arguments,
    ),
    "firefox": BrowserKind(
        name="Firefox",
        linux_executable="firefox",
        mac_os_executable="/Applications/Firefox.app/Contents/MacOS/firefox-bin",
        windows_executable=r"Mozilla Firefox\firefox.exe",
        build_arguments=_firefox_arguments,
    ),
    "safari": BrowserKind(
        name="Safari",
        linux_executable="safari",
        mac_os_executable="/Applications/Safari.app/Contents/MacOS/Safari",
        windows_executable="safari.exe",
        build_arguments=_safari_arguments,
    ),
    "ie": BrowserKind(
        name="Internet Explorer",
        linux_executable="iexplore",
        mac_os_executable="iexplore",
        windows_executable=r"Internet Explorer\iexplore.exe",
        build_arguments=_internet_explorer_arguments,
    ),
    "phantomjs": BrowserKind(
        name="PhantomJS",
        linux_executable="phantomjs",
        mac_os_executable="phantomjs",
        windows_executable="phantomjs.exe",
        build_arguments=_phantom_js_arguments,
    ),
}
