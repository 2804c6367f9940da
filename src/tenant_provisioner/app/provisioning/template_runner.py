"""Template runner collaborator with explicitly scoped credentials.

The downstream infrastructure template must run with the freshly issued
tenant token, not the provisioner's own. The token travels as a
``CredentialScope`` argument and is materialised only for the lifetime of
one run, in the child process environment. ``os.environ`` is never touched,
so concurrent deployments cannot see each other's credentials.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Mapping, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_ENV_VAR = 'SI_API_TOKEN'
DEFAULT_TEMPLATE_TIMEOUT_SECONDS = 600.0


class TemplateRunError(RuntimeError):
    """The template run failed or could not be started."""

    def __init__(self, template_ref: str, reason: str, *, exit_code: int | None = None) -> None:
        self.template_ref = template_ref
        self.reason = reason
        self.exit_code = exit_code
        super().__init__(f'template {template_ref!r} failed: {reason}')


@dataclass(frozen=True, slots=True)
class CredentialScope:
    """Credentials a single template run may use.

    The token is excluded from ``repr`` so the scope can be logged safely.
    """

    name: str
    token: str = field(repr=False)
    env_var: str = DEFAULT_TOKEN_ENV_VAR

    def __post_init__(self) -> None:
        if not self.token:
            raise ValueError('credential scope requires a token')

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[dict[str, str]]:
        """Yield the environment entries for this scope, cleared on exit."""
        env = {self.env_var: self.token}
        logger.debug('Credential scope %s acquired', self.name)
        try:
            yield env
        finally:
            env.clear()
            logger.debug('Credential scope %s released', self.name)


class SubprocessTemplateRunner:
    """Runs a template through an external CLI in a child process.

    The command is invoked as::

        <command...> <template_ref> --key <key> [--input <input_ref>]

    with the scope's variables layered over ``base_env`` (by default a copy
    of the current environment taken at construction time).
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        base_env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout_seconds: float = DEFAULT_TEMPLATE_TIMEOUT_SECONDS,
    ) -> None:
        if not command:
            raise ValueError('command is required')
        self._command = tuple(command)
        self._base_env = dict(os.environ if base_env is None else base_env)
        self._cwd = cwd
        self._timeout = timeout_seconds

    def build_args(self, template_ref: str, *, key: str, input_ref: str | None) -> list[str]:
        args = [*self._command, template_ref, '--key', key]
        if input_ref:
            args.extend(['--input', input_ref])
        return args

    async def run(
        self,
        template_ref: str,
        *,
        key: str,
        input_ref: str | None,
        credential_scope: CredentialScope,
    ) -> None:
        args = self.build_args(template_ref, key=key, input_ref=input_ref)
        async with credential_scope.acquire() as scoped_env:
            env = {**self._base_env, **scoped_env}
            try:
                proc = await asyncio.create_subprocess_exec(
                    *args,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    cwd=self._cwd,
                    env=env,
                )
            except OSError as exc:
                raise TemplateRunError(template_ref, str(exc)) from exc

            try:
                _, stderr = await asyncio.wait_for(
                    proc.communicate(), timeout=self._timeout,
                )
            except asyncio.TimeoutError as exc:
                proc.kill()
                await proc.wait()
                raise TemplateRunError(
                    template_ref, f'timed out after {self._timeout:g}s',
                ) from exc
            finally:
                env.clear()

        if proc.returncode != 0:
            tail = (stderr or b'').decode(errors='replace').strip()[-500:]
            raise TemplateRunError(
                template_ref,
                tail or f'exit code {proc.returncode}',
                exit_code=proc.returncode,
            )
        logger.info('Template %s completed (key=%s)', template_ref, key)
