# Copyright (c) Syntropy Systems
"""Thin client for the external retrieval engine CLI."""
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from pydantic import ValidationError
from typing_extensions import TypeAlias

from driftgate.errors import EngineError
from driftgate.models.engine import QueryRequest, QueryResponse
from driftgate.runner import ProcessRunner, run_command

if TYPE_CHECKING:
    from collections.abc import Sequence

    from driftgate.config import GateConfig

logger = logging.getLogger(__name__)

EmbedRefreshMode: TypeAlias = Literal["full", "missing-or-stale"]

QUERY_TIMEOUT_SECONDS = 300


class EngineClient:
    """Invokes the engine's ingest, validate, embed and query commands.

    Long-running commands stream into ``<log_dir>/<step>.log``; queries are
    captured in memory and parsed as JSON.
    """

    command: list[str]
    workdir: Path
    log_dir: Path
    env: dict[str, str]
    stage_env_var: str
    version_command: list[str]
    kill_grace_period: float

    def __init__(
        self,
        command: Sequence[str],
        workdir: Path,
        log_dir: Path,
        *,
        env: dict[str, str] | None = None,
        stage_env_var: str = "WP2_GATE_STAGE",
        version_command: Sequence[str] | None = None,
        kill_grace_period: float = 10.0,
    ) -> None:
        if not command:
            msg = "engine command must not be empty"
            raise ValueError(msg)
        self.command = list(command)
        self.workdir = workdir
        self.log_dir = log_dir
        self.env = dict(env or {})
        self.stage_env_var = stage_env_var
        self.version_command = list(version_command or [])
        self.kill_grace_period = kill_grace_period

    @classmethod
    def from_config(
        cls, config: GateConfig, log_dir: Path, env: dict[str, str] | None = None
    ) -> EngineClient:
        """Build a client from the project configuration."""
        return cls(
            config.engine_command,
            config.project_root,
            log_dir,
            env=env,
            stage_env_var=config.stage_env_var,
            version_command=config.version_command,
            kill_grace_period=config.kill_grace_period,
        )

    def _argv(self, tail: Sequence[str]) -> list[str]:
        head = self.command[0]
        # Relative executables such as target/debug/engine resolve in workdir
        if os.sep in head and not Path(head).is_absolute():
            head = str(self.workdir / head)
        return [head, *self.command[1:], *tail]

    def executable_available(self) -> bool:
        """Whether the engine executable can be located."""
        head = self._argv([])[0]
        if os.sep in head:
            return Path(head).exists()
        return shutil.which(head) is not None

    def run_step(
        self,
        name: str,
        argv: Sequence[str],
        *,
        env: dict[str, str] | None = None,
        raw: bool = False,
    ) -> None:
        """Run a long command, logging to ``<log_dir>/<name>.log``.

        ``raw`` runs ``argv`` as-is instead of prefixing the engine command.

        Raises:
            EngineError: The command exited non-zero or could not start.

        """
        full_argv = list(argv) if raw else self._argv(argv)
        merged_env = {**self.env, **(env or {})}
        runner = ProcessRunner(
            full_argv,
            self.workdir,
            self.log_dir / f"{name}.log",
            env=merged_env,
        )
        logger.info("Running %s: %s", name, " ".join(full_argv))
        try:
            code = runner.run()
        except OSError as e:
            msg = f"{name}: could not start {full_argv[0]}: {e}"
            raise EngineError(msg, argv=full_argv) from e
        if code != 0:
            msg = f"{name} exited with code {code} (log: {runner.output_path})"
            raise EngineError(
                msg,
                argv=full_argv,
                exit_code=code,
                stderr=runner.tail(),
            )

    def ingest(
        self,
        cache_root: Path,
        *,
        target_parts: Sequence[int],
        max_pages: int = 0,
        log_name: str = "ingest",
    ) -> None:
        """Ingest source documents for the given target parts."""
        argv = ["ingest", "--cache-root", str(cache_root)]
        for part in target_parts:
            argv += ["--target-part", str(part)]
        if max_pages > 0:
            argv += ["--max-pages-per-doc", str(max_pages)]
        self.run_step(log_name, argv)

    def validate(
        self,
        cache_root: Path,
        *,
        stage: str | None = None,
        log_name: str = "validate",
    ) -> None:
        """Run engine validation, optionally under stage A or B."""
        env = {self.stage_env_var: stage} if stage else None
        self.run_step(log_name, ["validate", "--cache-root", str(cache_root)], env=env)

    def embed(
        self,
        cache_root: Path,
        *,
        model_id: str,
        refresh_mode: EmbedRefreshMode = "full",
        lock_path: Path | None = None,
        log_name: str = "embed",
    ) -> None:
        """Compute or refresh chunk embeddings."""
        argv = [
            "embed",
            "--cache-root",
            str(cache_root),
            "--model-id",
            model_id,
            "--refresh-mode",
            refresh_mode,
        ]
        if lock_path is not None:
            argv += ["--semantic-model-lock-path", str(lock_path)]
        self.run_step(log_name, argv)

    def build(self, commands: Sequence[Sequence[str]]) -> None:
        """Run build and test commands in order, stopping at the first failure."""
        for index, command in enumerate(commands, start=1):
            self.run_step(f"build_{index:02d}", list(command), raw=True)

    def version(self) -> str:
        """Engine version, the last whitespace-separated token of its output.

        Raises:
            EngineError: The version command failed.

        """
        argv = self.version_command or self._argv(["--version"])
        result = run_command(
            argv, timeout=QUERY_TIMEOUT_SECONDS, cwd=self.workdir, env=self._env()
        )
        if result is None or result.returncode != 0:
            msg = f"could not determine engine version via {' '.join(argv)}"
            raise EngineError(
                msg,
                argv=argv,
                exit_code=None if result is None else result.returncode,
                stderr="" if result is None else result.stderr.strip(),
            )
        tokens = result.stdout.split()
        if not tokens:
            msg = "engine version command printed nothing"
            raise EngineError(msg, argv=argv, exit_code=0)
        return tokens[-1]

    def query(self, request: QueryRequest) -> QueryResponse:
        """Run one query and parse its JSON output.

        Raises:
            EngineError: Non-zero exit or output that is not a query response.

        """
        argv = self._argv(
            [
                "query",
                "--cache-root",
                request.cache_root,
                "--query",
                request.query_text,
                "--retrieval-mode",
                request.mode,
                "--lexical-k",
                str(request.lexical_k),
                "--semantic-k",
                str(request.semantic_k),
                "--rrf-k",
                str(request.rrf_k),
                "--timeout-ms",
                str(request.timeout_ms),
                "--json",
                "--limit",
                str(request.limit),
            ]
        )
        if request.part:
            argv += ["--part", request.part]
        if request.chunk_type:
            argv += ["--type", request.chunk_type]
        if request.mode != "lexical" and request.semantic_model_id:
            argv += ["--semantic-model-id", request.semantic_model_id]

        result = run_command(
            argv, timeout=QUERY_TIMEOUT_SECONDS, cwd=self.workdir, env=self._env()
        )
        if result is None:
            msg = f"query could not be executed: {argv[0]}"
            raise EngineError(msg, argv=argv)
        if result.returncode != 0:
            stderr = result.stderr.strip()
            msg = stderr or f"query exited with code {result.returncode}"
            raise EngineError(
                msg, argv=argv, exit_code=result.returncode, stderr=stderr
            )
        try:
            return QueryResponse.model_validate_json(result.stdout)
        except ValidationError as e:
            msg = f"query output is not a valid JSON response: {e.errors()[0]['msg']}"
            raise EngineError(msg, argv=argv, exit_code=0) from e

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        return env
