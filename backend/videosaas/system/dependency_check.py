from __future__ import annotations

import platform
import shutil
import subprocess
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

VersionRunner = Callable[[list[str]], "tuple[bool, str]"]
Which = Callable[[str], "str | None"]


@dataclass(frozen=True)
class RecorderBinary:
    name: str
    purpose: str
    probes: tuple[list[str], ...]
    required: bool = True


@dataclass
class BinaryStatus:
    name: str
    purpose: str
    required: bool
    found: bool = False
    path: str | None = None
    version: str | None = None
    active_command: str | None = None
    detail: str = "not found"
    checked_commands: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.found:
            return "ok"
        return "fail" if self.required else "warn"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status
        return data


RECORDER_BINARIES: tuple[RecorderBinary, ...] = (
    RecorderBinary("node", "runs the Playwright recorder driver", (["node", "--version"],)),
    RecorderBinary(
        "chromium",
        "browser driven by the synced script",
        (["chromium", "--version"], ["chromium-browser", "--version"]),
    ),
    RecorderBinary("ffmpeg", "muxes narration into the recording", (["ffmpeg", "-version"],)),
    RecorderBinary("Xvfb", "virtual display for headed recording", (["Xvfb", "-version"],), required=False),
    RecorderBinary("xdpyinfo", "verifies the virtual display", (["xdpyinfo", "-version"],), required=False),
    RecorderBinary("pulseaudio", "audio playback during recording", (["pulseaudio", "--version"],), required=False),
)


def _run_version_command(command: list[str]) -> tuple[bool, str]:
    try:
        completed = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        return False, str(exc)
    lines = (completed.stdout or "").strip().splitlines()
    if completed.returncode != 0:
        return False, lines[-1] if lines else f"exit code {completed.returncode}"
    return True, lines[0] if lines else ""


def probe_binary(binary: RecorderBinary, which: Which, runner: VersionRunner) -> BinaryStatus:
    result = BinaryStatus(
        name=binary.name,
        purpose=binary.purpose,
        required=binary.required,
        checked_commands=[" ".join(probe) for probe in binary.probes],
    )
    for probe in binary.probes:
        location = which(probe[0])
        if location is None:
            continue
        ok, message = runner(probe)
        if not ok:
            result.detail = message or result.detail
            continue
        result.found = True
        result.path = location
        result.version = message
        result.active_command = " ".join(probe)
        result.detail = "ok"
        break
    return result


def overall_status(results: list[BinaryStatus]) -> str:
    statuses = {item.status for item in results}
    for level in ("fail", "warn"):
        if level in statuses:
            return level
    return "ok"


def check_recorder_dependencies(
    which: Which = shutil.which,
    runner: VersionRunner = _run_version_command,
) -> dict[str, Any]:
    """Probe the recording container's binaries and report what is usable."""
    results = [probe_binary(binary, which, runner) for binary in RECORDER_BINARIES]
    return {
        "overall": overall_status(results),
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "platform": {
            "system": platform.system(),
            "machine": platform.machine(),
            "python": platform.python_version(),
        },
        "dependencies": [item.to_dict() for item in results],
    }


def missing_dependencies(report: dict[str, Any]) -> list[str]:
    return [item["name"] for item in report.get("dependencies", []) if not item["found"]]


def exit_status(report: dict[str, Any], strict: bool = False) -> int:
    """0 when the recorder can run; strict mode also fails on missing optional tools."""
    failing = {"fail", "warn"} if strict else {"fail"}
    return 1 if report["overall"] in failing else 0


def format_report(report: dict[str, Any]) -> str:
    lines = [f"Recorder dependencies: {report['overall'].upper()}"]
    for title, required in (("Required", True), ("Optional", False)):
        lines.append(f"{title}:")
        for item in report["dependencies"]:
            if item["required"] != required:
                continue
            detail = (item["version"] or item["path"]) if item["found"] else item["detail"]
            lines.append(f"  [{item['status']:<4}] {item['name']:<11} {detail}  ({item['purpose']})")
    return "\n".join(lines)
