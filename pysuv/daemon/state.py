"""In-memory program table for the daemon.

Holds every managed program, its child process and its status. The
program list is persisted to programs.json on every change and reloaded
when the daemon starts.

Thread safety: This class is NOT thread-safe. The daemon uses asyncio
which is single-threaded, so no locking is needed.
"""

import asyncio
import json
import logging
import os
import signal
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

RUNNING = "running"
STOPPED = "stopped"
EXITED = "exited"
FATAL = "fatal"

STOP_TIMEOUT = 5.0


class ProgramError(Exception):
    """A program operation was rejected."""


@dataclass
class ProgramInfo:
    """Persisted description of a program."""
    name: str
    directory: str
    command: List[str]
    environ: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgramInfo":
        name = str(data.get("name") or "").strip()
        command = data.get("command") or []
        if not name:
            raise ProgramError("program name is required")
        if "/" in name or name in (".", ".."):
            raise ProgramError(f"invalid program name {name!r}")
        if not isinstance(command, list) or not command:
            raise ProgramError("program command is required")
        return cls(
            name=name,
            directory=str(data.get("directory") or os.getcwd()),
            command=[str(arg) for arg in command],
            environ=[str(kv) for kv in data.get("environ") or []],
        )


@dataclass
class Program:
    """Runtime state of one program."""
    info: ProgramInfo
    status: str = STOPPED
    extra: str = ""
    process: Optional[asyncio.subprocess.Process] = None
    waiter: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None


def parse_environ(environ: List[str]) -> Dict[str, str]:
    """Turn KEY=VAL entries into a dict; entries without '=' get an empty value."""
    env: Dict[str, str] = {}
    for entry in environ:
        key, _, value = entry.partition("=")
        if key:
            env[key] = value
    return env


class SupervisorState:
    """Program table plus the operations the daemon exposes over RPC."""

    def __init__(self, program_config: Path, log_dir: Path):
        self.program_config = program_config
        self.log_dir = log_dir
        self.programs: Dict[str, Program] = {}

    def load(self) -> List[ProgramInfo]:
        """Load persisted programs; corrupt entries are skipped."""
        if not self.program_config.exists():
            return []
        try:
            with open(self.program_config) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Cannot read {self.program_config}: {e}")
            return []

        loaded = []
        for entry in data if isinstance(data, list) else []:
            try:
                info = ProgramInfo.from_dict(entry)
            except (ProgramError, AttributeError) as e:
                logger.warning(f"Skipping program entry {entry!r}: {e}")
                continue
            self.programs[info.name] = Program(info=info)
            loaded.append(info)
        return loaded

    def persist(self) -> None:
        self.program_config.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.program_config.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump([asdict(p.info) for p in self.programs.values()], f, indent=2)
        os.replace(tmp_path, self.program_config)

    def log_path(self, name: str) -> Path:
        return self.log_dir / f"{name}.log"

    def get(self, name: str) -> Program:
        program = self.programs.get(name)
        if program is None:
            raise ProgramError(f"program {name!r} not found")
        return program

    def status(self) -> List[Dict[str, str]]:
        return [
            {"name": name, "status": p.status, "extra": p.extra}
            for name, p in self.programs.items()
        ]

    async def create(self, data: Dict[str, Any]) -> str:
        info = ProgramInfo.from_dict(data)
        if info.name in self.programs:
            raise ProgramError(f"program {info.name!r} already exists")
        self.programs[info.name] = Program(info=info)
        self.persist()
        logger.info(f"Program {info.name} created: {info.command}")
        await self.start(info.name)
        return f"program {info.name} created"

    async def start(self, name: str) -> str:
        program = self.get(name)
        if program.running:
            raise ProgramError(f"program {name!r} is already running")

        self.log_dir.mkdir(parents=True, exist_ok=True)
        env = dict(os.environ)
        env.update(parse_environ(program.info.environ))
        with open(self.log_path(name), "ab") as log_file:
            try:
                process = await asyncio.create_subprocess_exec(
                    *program.info.command,
                    cwd=program.info.directory,
                    env=env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as e:
                program.status = FATAL
                program.extra = str(e)
                logger.error(f"Program {name} failed to start: {e}")
                raise ProgramError(f"program {name!r} failed to start: {e}") from e

        program.process = process
        program.status = RUNNING
        program.extra = f"pid {process.pid}"
        program.waiter = asyncio.create_task(self._watch(program, process))
        logger.info(f"Program {name} started, pid {process.pid}")
        return f"program {name} started"

    async def stop(self, name: str) -> str:
        program = self.get(name)
        if not program.running:
            raise ProgramError(f"program {name!r} is not running")
        await self._terminate(program)
        return f"program {name} stopped"

    async def stop_all(self) -> None:
        for program in list(self.programs.values()):
            if program.running:
                await self._terminate(program)

    async def _terminate(self, program: Program) -> None:
        process = program.process
        program.status = STOPPED
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Program {program.info.name} ignored SIGTERM, killing")
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await process.wait()
        program.extra = ""
        logger.info(f"Program {program.info.name} stopped")

    async def _watch(self, program: Program, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if program.process is not process:
            return
        if program.status == RUNNING:
            program.status = EXITED
            program.extra = f"exit {code}"
            logger.info(f"Program {program.info.name} exited with status {code}")
