"""Recording container bootstrap.

Prepares the container for a browser recording run (virtual display, optional
audio daemon, scratch directories) and then hands off to the recorder driver.
Every preparation step is fail-open: problems are collected as warnings on a
BootstrapReport and the driver still runs. Only the driver's exit code decides
the container's exit code.
"""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from ..config import TRUTHY
from ..logging_setup import configure_logging
from ..system import check_recorder_dependencies, missing_dependencies

SPAWN_FAILED_EXIT_CODE = 127
SIGNAL_EXIT_BASE = 128
XVFB_STOP_TIMEOUT_SECONDS = 5.0
DEFAULT_DRIVER_CMD = "node /app/dist/index.js"


def shell_exit_code(returncode: int) -> int:
    """Map subprocess's negative signal codes to the shell's 128 + signal form."""
    return SIGNAL_EXIT_BASE + abs(returncode) if returncode < 0 else returncode


@dataclass(frozen=True)
class RecorderEnv:
    project_id: str
    tenant_id: str
    s3_bucket: str
    aws_region: str
    use_simple_recording: bool
    enable_audio_playback: bool
    driver_cmd: list[str]
    audio_dir: Path
    video_dir: Path
    script_dir: Path
    display: str = ":99"
    screen: str = "1920x1080x24"
    display_wait_seconds: float = 2.0
    xvfb_log: Path = Path("/tmp/xvfb.log")

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "RecorderEnv":
        env = os.environ if environ is None else environ

        def flag(name: str) -> bool:
            return str(env.get(name, "")).strip().lower() in TRUTHY

        return cls(
            project_id=env.get("PROJECT_ID", ""),
            tenant_id=env.get("TENANT_ID", ""),
            s3_bucket=env.get("S3_BUCKET", ""),
            aws_region=env.get("AWS_REGION", ""),
            use_simple_recording=flag("USE_SIMPLE_RECORDING"),
            enable_audio_playback=flag("ENABLE_AUDIO_PLAYBACK"),
            driver_cmd=shlex.split(env.get("RECORDER_DRIVER_CMD") or DEFAULT_DRIVER_CMD),
            audio_dir=Path(env.get("AUDIO_PATH", "/tmp/audio")),
            video_dir=Path(env.get("VIDEO_PATH", "/tmp/video")),
            script_dir=Path(env.get("SCRIPT_PATH", "/tmp/script")),
            display=env.get("XVFB_DISPLAY", ":99"),
            screen=env.get("XVFB_SCREEN", "1920x1080x24"),
            display_wait_seconds=float(env.get("XVFB_WAIT_SECONDS", "2")),
            xvfb_log=Path(env.get("XVFB_LOG", "/tmp/xvfb.log")),
        )


@dataclass
class BootstrapReport:
    warnings: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    display: str | None = None
    audio_started: bool = False
    exit_code: int | None = None
    output_files: list[dict[str, Any]] = field(default_factory=list)

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def as_dict(self) -> dict[str, Any]:
        return {
            "warnings": list(self.warnings),
            "steps": list(self.steps),
            "display": self.display,
            "audio_started": self.audio_started,
            "exit_code": self.exit_code,
            "output_files": list(self.output_files),
        }


class RecorderBootstrap:
    def __init__(
        self,
        env: RecorderEnv,
        popen: Callable[..., Any] = subprocess.Popen,
        run: Callable[..., Any] = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
        dependency_check: Callable[[], dict[str, Any]] = check_recorder_dependencies,
    ) -> None:
        self.env = env
        self._popen = popen
        self._run = run
        self._sleep = sleep
        self._dependency_check = dependency_check
        self._xvfb: Any = None
        self._xvfb_log_handle: Any = None

    def run(self) -> BootstrapReport:
        report = BootstrapReport()
        for name, step in (
            ("init", self._log_init),
            ("binaries", self._check_binaries),
            ("display", self._start_display),
            ("audio", self._start_audio),
            ("verify_display", self._verify_display),
            ("directories", self._prepare_dirs),
        ):
            try:
                step(report)
            except Exception as exc:  # noqa: BLE001
                report.warn(f"{name} step failed: {exc}")
            report.steps.append(name)

        try:
            report.exit_code = self._delegate(report)
        finally:
            self._stop_display()
        report.steps.append("delegate")
        self._list_outputs(report)
        report.steps.append("report")
        logger.info("Container exiting with code {} ({} warnings)", report.exit_code, len(report.warnings))
        return report

    def _log_init(self, report: BootstrapReport) -> None:
        env = self.env
        logger.info("=== Video Recording Container Starting ===")
        logger.info("Project ID: {}", env.project_id or "not set")
        logger.info("Tenant ID: {}", env.tenant_id or "not set")
        logger.info("S3 Bucket: {}", env.s3_bucket or "not set")
        logger.info("USE_SIMPLE_RECORDING: {}", env.use_simple_recording)
        logger.info("ENABLE_AUDIO_PLAYBACK: {}", env.enable_audio_playback)
        logger.info("AWS_REGION: {}", env.aws_region or "not set")
        logger.info("CPU count: {}", os.cpu_count())
        for command in (["free", "-h"], ["df", "-h", str(env.video_dir.parent)]):
            try:
                completed = self._run(command, capture_output=True, text=True, timeout=5, check=False)
                logger.info("{}:\n{}", " ".join(command), (completed.stdout or "").strip())
            except Exception as exc:  # noqa: BLE001
                logger.debug("{} not available: {}", command[0], exc)

    def _check_binaries(self, report: BootstrapReport) -> None:
        dependencies = self._dependency_check()
        for item in dependencies.get("dependencies", []):
            if item["found"]:
                logger.info("{}: {}", item["name"], item.get("path") or item.get("active_command"))
        for name in missing_dependencies(dependencies):
            report.warn(f"{name} not found in PATH")

    def _start_display(self, report: BootstrapReport) -> None:
        env = self.env
        logger.info("Starting Xvfb on {}", env.display)
        try:
            log_file = env.xvfb_log.open("wb")
            self._xvfb_log_handle = log_file
            self._xvfb = self._popen(
                ["Xvfb", env.display, "-screen", "0", env.screen],
                stdout=log_file,
                stderr=subprocess.STDOUT,
            )
        except Exception as exc:  # noqa: BLE001
            report.warn(f"Xvfb could not be started: {exc}")
            return
        self._sleep(env.display_wait_seconds)
        if self._xvfb.poll() is None:
            report.display = env.display
            logger.info("Xvfb started (PID: {})", getattr(self._xvfb, "pid", "?"))
            return
        report.warn(f"Xvfb failed to stay up: {self._read_xvfb_log() or 'no log output'}")

    def _read_xvfb_log(self) -> str:
        try:
            return self.env.xvfb_log.read_text(encoding="utf-8", errors="replace").strip()
        except OSError:
            return ""

    def _start_audio(self, report: BootstrapReport) -> None:
        if not self.env.enable_audio_playback:
            logger.info("Skipping PulseAudio (audio playback disabled)")
            return
        try:
            completed = self._run(
                ["pulseaudio", "--start", "--log-target=syslog"],
                capture_output=True,
                text=True,
                timeout=10,
                check=False,
            )
        except Exception as exc:  # noqa: BLE001
            report.warn(f"PulseAudio failed to start: {exc}")
            return
        if completed.returncode != 0:
            report.warn(f"PulseAudio failed to start: {(completed.stderr or '').strip() or completed.returncode}")
            return
        report.audio_started = True
        logger.info("PulseAudio started")
        self._sleep(1)

    def _verify_display(self, report: BootstrapReport) -> None:
        if self.env.use_simple_recording:
            logger.info("Skipping display verification for simple recording")
            return
        try:
            completed = self._run(
                ["xdpyinfo", "-display", self.env.display],
                capture_output=True,
                timeout=10,
                check=False,
            )
            available = completed.returncode == 0
        except Exception:  # noqa: BLE001
            available = False
        if available:
            logger.info("Display {} is available", self.env.display)
        else:
            report.warn(f"Display {self.env.display} is not available")

    def _prepare_dirs(self, report: BootstrapReport) -> None:
        for path in (self.env.audio_dir, self.env.video_dir, self.env.script_dir):
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                report.warn(f"Could not create {path}: {exc}")

    def _driver_env(self, report: BootstrapReport) -> dict[str, str]:
        env = dict(os.environ)
        if report.display:
            env["DISPLAY"] = report.display
        return env

    def _delegate(self, report: BootstrapReport) -> int:
        command = self.env.driver_cmd
        logger.info("Starting video recorder ({})", " ".join(command))
        try:
            completed = self._run(command, env=self._driver_env(report), check=False)
        except Exception as exc:  # noqa: BLE001
            report.warn(f"Recorder driver could not be started: {exc}")
            return SPAWN_FAILED_EXIT_CODE
        code = shell_exit_code(int(completed.returncode))
        logger.info("Driver process exited with code: {} (raw {})", code, completed.returncode)
        return code

    def _stop_display(self) -> None:
        xvfb, self._xvfb = self._xvfb, None
        if xvfb is not None and xvfb.poll() is None:
            try:
                xvfb.terminate()
                xvfb.wait(timeout=XVFB_STOP_TIMEOUT_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning("Xvfb ignored SIGTERM, killing it")
                xvfb.kill()
                xvfb.wait()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Could not stop Xvfb: {}", exc)
        handle, self._xvfb_log_handle = self._xvfb_log_handle, None
        if handle is not None:
            handle.close()

    def _list_outputs(self, report: BootstrapReport) -> None:
        try:
            files = sorted(p for p in self.env.video_dir.iterdir() if p.is_file())
        except OSError:
            logger.info("No files in {}", self.env.video_dir)
            return
        for path in files:
            entry = {"name": path.name, "size": path.stat().st_size}
            report.output_files.append(entry)
            logger.info("{} ({} bytes)", entry["name"], entry["size"])


def main() -> int:
    configure_logging(enqueue=False)
    report = RecorderBootstrap(RecorderEnv.from_env()).run()
    return int(report.exit_code if report.exit_code is not None else SPAWN_FAILED_EXIT_CODE)


if __name__ == "__main__":
    raise SystemExit(main())
