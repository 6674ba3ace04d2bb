"""
Copilot Enricher

Runs LLM prompts through the GitHub Copilot CLI:

    copilot -p <prompt> --model <model>

The CLI has no separate system prompt, so it is prepended to the user prompt.
"""

import asyncio
import logging
import os

logger = logging.getLogger(__name__)

# Copilot executable path - override with COPILOT_PATH env var for systemd/non-PATH contexts
COPILOT_PATH = os.environ.get('COPILOT_PATH', 'copilot')

DEFAULT_CALL_TIMEOUT = 120


class EnrichmentError(Exception):
    """The enrichment backend could not be run."""


class EnrichmentTimeout(EnrichmentError):
    pass


def build_prompt(system_prompt: str, user_prompt: str) -> str:
    system_prompt = (system_prompt or '').strip()
    if not system_prompt:
        return user_prompt
    return f"{system_prompt}\n\n{user_prompt}"


class CopilotEnricher:
    def __init__(self, copilot_path: str = COPILOT_PATH, timeout: float = DEFAULT_CALL_TIMEOUT):
        self.copilot_path = copilot_path
        self.timeout = timeout

    def command(self, prompt: str, model_id: str) -> list[str]:
        return [self.copilot_path, '-p', prompt, '--model', model_id]

    async def call(self, system_prompt: str, user_prompt: str, model_id: str,
                   options: dict | None = None) -> str | None:
        """Run one prompt; returns the response text, or None on a failed/empty run.

        options may carry 'timeout' (seconds) to override the default.
        Raises EnrichmentTimeout when the call runs too long and EnrichmentError
        when the executable can't be started.
        """
        timeout = (options or {}).get('timeout') or self.timeout
        cmd = self.command(build_prompt(system_prompt, user_prompt), model_id)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EnrichmentError(f"Failed to run {self.copilot_path}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise EnrichmentTimeout(f"Copilot call timed out after {timeout}s (model {model_id})")

        if proc.returncode != 0:
            error_msg = stderr.decode(errors='replace').strip()[-500:]
            logger.warning(f"Copilot exited with {proc.returncode} (model {model_id}): {error_msg}")
            return None

        output = stdout.decode(errors='replace').strip()
        if not output:
            logger.warning(f"Copilot returned empty output (model {model_id})")
            return None
        return output
