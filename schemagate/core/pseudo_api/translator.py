"""
TRANSLATOR - boundary to the natural-language translator

The free-text → command translator lives outside this service. Here we only
define the contract it must satisfy and two implementations:

    UnavailableTranslator → default, every prompt fails with a clear message
    PrebuiltTranslator    → serves pre-built translations keyed by prompt
"""

import re
from typing import Dict, Optional, Protocol, Union

from pydantic import TypeAdapter

from schemagate.core.schemas import (
    AgentCommand,
    PseudoApiRequest,
    TranslationError,
    TranslationRequest,
    TranslationResult,
)

command_adapter = TypeAdapter(AgentCommand)


class Translator(Protocol):
    def translate(self, request: TranslationRequest) -> TranslationResult: ...


def normalize_prompt(prompt: str) -> str:
    return re.sub(r"\s+", " ", prompt.strip().lower())


class UnavailableTranslator:
    def translate(self, request: TranslationRequest) -> TranslationResult:
        return TranslationResult(
            success=False,
            error=TranslationError(
                message="No natural-language translator is configured; "
                "send a canonical request instead.",
            ),
        )


class PrebuiltTranslator:
    """
    Looks prompts up in a table of already translated commands.

    Prompts match case- and whitespace-insensitively. The caller's scope and
    dryRun flag always win over whatever the stored translation carried.
    """

    def __init__(self, translations: Optional[Dict[str, Union[dict, PseudoApiRequest]]] = None):
        self._translations: Dict[str, AgentCommand] = {}
        for prompt, payload in (translations or {}).items():
            self.register(prompt, payload)

    def register(self, prompt: str, payload: Union[dict, PseudoApiRequest]) -> None:
        if isinstance(payload, PseudoApiRequest):
            command = payload.command
        elif "command" in payload:
            command = command_adapter.validate_python(payload["command"])
        else:
            command = command_adapter.validate_python(payload)
        self._translations[normalize_prompt(prompt)] = command

    def translate(self, request: TranslationRequest) -> TranslationResult:
        command = self._translations.get(normalize_prompt(request.input))
        if command is None:
            return TranslationResult(
                success=False,
                error=TranslationError(
                    message=f"No translation registered for prompt: {request.input}",
                    suggestions=sorted(self._translations)[:5],
                ),
            )

        return TranslationResult(
            success=True,
            confidence=1.0,
            notes=["Served from pre-built translations."],
            pseudo_request=PseudoApiRequest(
                dry_run=request.dry_run,
                scope=request.scope,
                command=command,
            ),
        )
