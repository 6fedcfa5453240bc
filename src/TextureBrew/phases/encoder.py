"""Build `ktx create` arguments and run the encoder as a cancellable task."""

import asyncio
import logging
import os
import platform
import shutil
import sys
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import (
    AlphaMode,
    CompressionSettings,
    OutputFormat,
    Supercompression,
    WrapMode,
)

logger = logging.getLogger("texture_pipeline.encoder")

# Known Windows NTSTATUS crash codes (as signed int32)
_CRASH_CODES_WIN = {
    -1073741819: "ACCESS_VIOLATION (0xC0000005)",
    -1073741795: "ILLEGAL_INSTRUCTION (0xC000001D)",
    -1073740791: "STACK_BUFFER_OVERRUN (0xC0000409)",
    -1073741571: "STACK_OVERFLOW (0xC00000FD)",
    -2147483645: "BREAKPOINT (0x80000003)",
    -1073741515: "DLL_NOT_FOUND (0xC0000135)",
    -1073741511: "ENTRYPOINT_NOT_FOUND (0xC0000139)",
    -1073741502: "DLL_INIT_FAILED (0xC0000142)",
}


class EncoderCancelledError(RuntimeError):
    """Raised when cancellation fires while the encoder is running."""


class EncoderError(RuntimeError):
    """Raised by callers when an encoder run did not produce a valid file."""

    def __init__(self, message: str, result: Optional["EncoderResult"] = None):
        super().__init__(message)
        self.result = result


def _is_crash_code(returncode: int) -> Optional[str]:
    """Return a human-readable crash description, or None if not a crash."""
    if sys.platform == "win32":
        desc = _CRASH_CODES_WIN.get(returncode)
        if desc:
            return desc
        if returncode < 0:
            return f"NTSTATUS 0x{returncode & 0xFFFFFFFF:08X}"
        return None
    # Unix: negative returncode means killed by signal
    if returncode < 0:
        sig_num = -returncode
        try:
            import signal
            return f"{signal.Signals(sig_num).name} (signal {sig_num})"
        except (ValueError, AttributeError):
            return f"signal {sig_num}"
    return None


def _forward_output(text: str, tool_label: str, stream_name: str,
                    level: int, max_lines: int = 120) -> None:
    """Log subprocess output line-by-line at the given level."""
    if not text or not text.strip():
        return
    lines = text.splitlines()
    if len(lines) > max_lines:
        omitted = len(lines) - max_lines
        logger.log(level, "[%s] ... %d earlier %s lines omitted",
                   tool_label, omitted, stream_name)
        lines = lines[-max_lines:]
    for line in lines:
        if len(line) > 500:
            line = line[:500] + "..."
        logger.log(level, "[%s] %s: %s", tool_label, stream_name, line)


@dataclass
class EncoderCommand:
    """Ordered `ktx create` arguments; paths kept apart so they can be quoted."""

    options: List[str]
    input_paths: List[str]
    output_path: str

    @property
    def argv(self) -> List[str]:
        """Arguments for direct process execution (no shell, no quotes)."""
        return list(self.options) + list(self.input_paths) + [self.output_path]

    @property
    def level_count(self) -> Optional[int]:
        if "--levels" in self.options:
            return int(self.options[self.options.index("--levels") + 1])
        return None

    @property
    def delegates_mipmaps(self) -> bool:
        return "--generate-mipmap" in self.options

    def render(self) -> str:
        """Single command line with every file path quoted."""
        paths = [f'"{p}"' for p in self.input_paths + [self.output_path]]
        return " ".join(list(self.options) + paths)


def format_command_line(command: EncoderCommand) -> str:
    return command.render()


def validate_encoder_settings(settings: CompressionSettings,
                              input_paths: Optional[List[str]] = None,
                              output_path: str = "-") -> List[str]:
    """Return reasons the encoder cannot run with these settings and paths."""
    errors = []
    if input_paths is not None and not input_paths:
        errors.append("at least one input image is required")
    if not output_path:
        errors.append("output path is required")
    if settings.output_format != OutputFormat.KTX2:
        errors.append("Basis output is not supported by the ktx create encoder")
    return errors


def build_encoder_arguments(input_paths: List[str], output_path: str,
                            settings: CompressionSettings,
                            srgb: bool = False) -> EncoderCommand:
    """Translate settings and paths into the `ktx create` argument list.

    Pure function: no file system access, no process execution.
    """
    errors = validate_encoder_settings(settings, input_paths, output_path)
    if errors:
        raise ValueError("Cannot build encoder arguments: " + "; ".join(errors))

    options = ["create"]
    channels = "R8G8B8" if settings.alpha_mode == AlphaMode.REMOVE else "R8G8B8A8"
    options += ["--format", f"{channels}_{'SRGB' if srgb else 'UNORM'}"]
    if not srgb:
        # PNG input is assumed sRGB; UNORM output needs the linear transfer.
        options += ["--assign-tf", "linear"]
    options += ["--encode", "uastc" if settings.is_uastc else "basis-lz"]

    if settings.delegates_mipmaps and len(input_paths) == 1:
        options += ["--generate-mipmap", "--mipmap-filter", settings.mip_filter.value]
        if settings.wrap_mode == WrapMode.WRAP:
            options += ["--mipmap-wrap", "wrap"]
    else:
        options += ["--levels", str(len(input_paths))]

    if settings.is_uastc:
        options += ["--uastc-quality", str(settings.uastc_quality)]
        if settings.use_uastc_rdo:
            options += ["--uastc-rdo", "--uastc-rdo-l", f"{settings.uastc_rdo_quality:.3f}"]
        # BasisLZ is already supercompressed; zstd/zlib only apply to UASTC.
        if settings.supercompression == Supercompression.ZSTANDARD:
            options += ["--zstd", str(settings.supercompression_level)]
        elif settings.supercompression == Supercompression.ZLIB:
            options += ["--zlib", str(settings.supercompression_level)]
    else:
        options += ["--clevel", str(settings.compression_level),
                    "--qlevel", str(settings.quality_level)]
        if not settings.use_etc1s_rdo:
            options += ["--no-endpoint-rdo", "--no-selector-rdo"]

    if not settings.use_multithreading:
        options += ["--threads", "1"]
    elif settings.thread_count > 0:
        options += ["--threads", str(settings.thread_count)]

    if settings.convert_to_normal_map:
        options.append("--normal-mode")
    if settings.normalize_vectors:
        options.append("--normalize")

    return EncoderCommand(options=options, input_paths=list(input_paths),
                          output_path=output_path)


@dataclass
class EncoderResult:
    success: bool
    returncode: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None
    command_line: str = ""
    warnings: List[str] = field(default_factory=list)


class KtxEncoder:
    """Run `ktx create` out of process.

    ``command`` overrides executable discovery with an explicit command
    prefix (for example an interpreter plus a wrapper script).
    """

    tool_label = "ktx"

    def __init__(self, executable: str = "", command: Optional[List[str]] = None,
                 timeout: float = 600.0, poll_interval: float = 0.05):
        self.executable = executable
        self.command = list(command) if command else None
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._resolved: Optional[List[str]] = None
        self._resolve_lock = threading.Lock()

    def resolve_executable(self) -> Optional[List[str]]:
        """Resolve and cache the encoder command prefix."""
        with self._resolve_lock:
            if self._resolved is not None:
                return self._resolved
            if self.command:
                self._resolved = self.command
                return self._resolved

            tool_path = None
            if self.executable:
                if os.path.isfile(self.executable):
                    tool_path = self.executable
                else:
                    tool_path = shutil.which(self.executable)
            if not tool_path:
                tool_path = shutil.which("ktx")
            if not tool_path:
                from .. import BIN_DIR
                exe_suffix = ".exe" if platform.system() == "Windows" else ""
                candidates = []
                for ktx_dir in sorted(BIN_DIR.glob("KTX-Software*"), reverse=True):
                    candidates.append(ktx_dir / "bin" / f"ktx{exe_suffix}")
                    candidates.append(ktx_dir / f"ktx{exe_suffix}")
                candidates.append(BIN_DIR / f"ktx{exe_suffix}")
                for candidate in candidates:
                    if candidate.is_file():
                        tool_path = str(candidate)
                        break

            if not tool_path:
                logger.warning(
                    "ktx encoder not found. Install KTX-Software from "
                    "https://github.com/KhronosGroup/KTX-Software or set ktx_path."
                )
                return None
            logger.info("Using ktx encoder: %s", tool_path)
            self._resolved = [tool_path]
            return self._resolved

    async def is_available(self) -> bool:
        """Return True when ``ktx --version`` runs and exits with 0."""
        prefix = self.resolve_executable()
        if prefix is None:
            return False
        try:
            proc = await asyncio.create_subprocess_exec(
                *prefix, "--version",
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=30)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.error("ktx encoder is not runnable (%s): %s", prefix[0], exc)
            return False
        if proc.returncode != 0:
            logger.error("ktx --version exited with code %s", proc.returncode)
            return False
        version = stdout.decode("utf-8", errors="replace").strip().splitlines()
        logger.debug("ktx version: %s", version[0] if version else "unknown")
        return True

    @staticmethod
    async def _terminate(proc, pending) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(asyncio.shield(pending), timeout=5)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            pending.cancel()

    async def encode(self, input_paths: List[str], output_path: str,
                     settings: CompressionSettings, srgb: bool = False,
                     cancel_event: Optional[threading.Event] = None) -> EncoderResult:
        """Encode ``input_paths`` (one per mip level) into ``output_path``."""
        command = build_encoder_arguments(input_paths, output_path, settings, srgb)
        return await self.run(command, cancel_event)

    async def run(self, command: EncoderCommand,
                  cancel_event: Optional[threading.Event] = None) -> EncoderResult:
        """Run the encoder; raise EncoderCancelledError if cancelled mid-run."""
        prefix = self.resolve_executable()
        rendered = command.render()
        if prefix is None:
            return EncoderResult(False, error="ktx encoder not found", command_line=rendered)
        if cancel_event is not None and cancel_event.is_set():
            raise EncoderCancelledError("Cancelled before the encoder started")

        os.makedirs(os.path.dirname(command.output_path) or ".", exist_ok=True)
        logger.debug("Running %s: %s", self.tool_label, rendered)
        try:
            proc = await asyncio.create_subprocess_exec(
                *prefix, *command.argv,
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError, OSError) as exc:
            logger.error("%s failed to start (%s): %s", self.tool_label, prefix[0], exc)
            return EncoderResult(False, error=f"Failed to start encoder: {exc}",
                                 command_line=rendered)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        pending = asyncio.ensure_future(proc.communicate())
        try:
            while True:
                done, _ = await asyncio.wait({pending}, timeout=self.poll_interval)
                if pending in done:
                    break
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning("Cancelling %s (pid %s)", self.tool_label, proc.pid)
                    await self._terminate(proc, pending)
                    raise EncoderCancelledError("Encoding cancelled")
                if loop.time() > deadline:
                    logger.error("%s timed out after %.0fs", self.tool_label, self.timeout)
                    await self._terminate(proc, pending)
                    return EncoderResult(False, returncode=proc.returncode,
                                         error=f"Encoder timed out after {self.timeout:.0f}s",
                                         command_line=rendered)
        except asyncio.CancelledError:
            await self._terminate(proc, pending)
            raise

        stdout_b, stderr_b = pending.result()
        stdout = (stdout_b or b"").decode("utf-8", errors="replace")
        stderr = (stderr_b or b"").decode("utf-8", errors="replace")
        returncode = proc.returncode

        if returncode != 0:
            _forward_output(stdout, self.tool_label, "stdout", logging.ERROR, max_lines=20)
            _forward_output(stderr, self.tool_label, "stderr", logging.ERROR, max_lines=40)
            crash = _is_crash_code(returncode)
            message = f"Encoder exited with code {returncode}"
            if crash:
                message += f" ({crash})"
            tail = stderr.strip().splitlines()[-3:]
            if tail:
                message += ": " + " | ".join(tail)
            return EncoderResult(False, returncode=returncode, stdout=stdout, stderr=stderr,
                                 error=message, command_line=rendered)

        _forward_output(stdout, self.tool_label, "stdout", logging.INFO, max_lines=200)
        _forward_output(stderr, self.tool_label, "stderr", logging.WARNING, max_lines=200)
        if not os.path.isfile(command.output_path):
            return EncoderResult(False, returncode=returncode, stdout=stdout, stderr=stderr,
                                 error=f"Encoder reported success but produced no file at "
                                       f"{command.output_path}",
                                 command_line=rendered)
        return EncoderResult(True, returncode=returncode, stdout=stdout, stderr=stderr,
                             command_line=rendered)
