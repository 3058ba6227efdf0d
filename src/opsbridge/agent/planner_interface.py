"""
Planner interface for opsbridge.

This module is the only place that *directly* calls an LLM.  Everything else (agent loop, tools,
validation, scoring) stays model-agnostic.

We support these back-ends out of the box:

1. **OpenAI / Anthropic** via their async SDKs (requires env keys).
2. **Hugging Face Text-Generation-Inference (TGI)** for self-hosted models.
3. **CI**: a deterministic planner that never leaves the process.

Additional providers can be added by subclassing :class:`BasePlanner`, implementing
:meth:`BasePlanner.complete`, and registering via :func:`register_planner`.
"""

import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    ClassVar,
    Dict,
    Optional,
    Sequence,
    Type,
)

import httpx

from opsbridge.config import (
    Settings,
    settings,
)
from opsbridge.core.payload import (
    safe_parse_json,
    strip_json_fences,
)
from opsbridge.core.schema import (
    HistoryEntry,
    InitialOperation,
    ToolDescriptor,
)

logger = logging.getLogger(__name__)

CI_ANSWER = "CI mode active: this prompt does not match pre-defined routes."


class PlannerError(RuntimeError):
    """The LLM backend could not produce a response."""


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_PLANNER_REGISTRY: dict[str, Type["BasePlanner"]] = {}


def register_planner(name: str) -> Callable:
    """Decorator to register a planner class under *name*."""

    def wrapper(cls: Type["BasePlanner"]) -> Type["BasePlanner"]:
        _PLANNER_REGISTRY[name] = cls
        return cls

    return wrapper


def load_planner(
    name: str | None = None, config: Settings | None = None, model: str | None = None
) -> "BasePlanner":
    """
    Factory that returns an instantiated planner.

    Fallback order:
    1. *name* arg
    2. ``settings.PLANNER`` env option
    3. default: ``"openai"``
    """
    cfg = config or settings
    target = name or getattr(cfg, "PLANNER", "openai")
    cls = _PLANNER_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Planner '{target}' is not registered.")
    return cls(config=cfg, model=model)


def _sanitize_json_string(content: str) -> str:
    """Clean up JSON strings returned by LLMs."""
    content = strip_json_fences(content)

    # Remove control characters except whitespace
    content = "".join(ch for ch in content if ch >= " " or ch in "\n\r\t")

    # Find the outermost matching braces
    open_idx = content.find("{")
    if open_idx >= 0:
        brace_count = 0
        for i in range(open_idx, len(content)):
            if content[i] == "{":
                brace_count += 1
            elif content[i] == "}":
                brace_count -= 1
                if brace_count == 0:
                    return content[open_idx : i + 1]
    return content


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BasePlanner(ABC):
    """Abstract planner that converts a goal plus history into the next raw plan."""

    name: ClassVar[str] = "base"

    # Common system prompt for all planners
    SYSTEM_PROMPT: ClassVar[
        str
    ] = """\
You are an operations assistant that can THINK and ACT on behalf of a store operator.
Work step by step. At each step either call ONE tool or give the final answer.
To call a tool, respond with JSON like:
{"action": "call_tool", "tool_name": "<name>", "tool_args": { ... }}
When you are done, respond with:
{"action": "final_answer", "answer": "<markdown reply to the operator>"}
Rules:
- Look up an operation with the search tool, inspect it with the schema tool, then execute it.
- Never repeat a write that already succeeded; reuse earlier results instead.
- Only state numbers that appear in tool results.
Only one object, no extra text.
"""

    def __init__(self, config: Settings | None = None, model: str | None = None) -> None:
        self.config = config or settings
        self._model = model

    @property
    def model_name(self) -> str:
        return self._model or ""

    def is_configured(self) -> bool:
        """Whether :meth:`complete` can reach an LLM (credentials present etc.)."""
        return True

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        json_mode: bool = True,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> str:
        """Send one system + user exchange to the backend and return the raw text."""

    # ------------------------------------------------------------------
    # Prompt assembly
    # ------------------------------------------------------------------
    def _build_system_prompt(self, tools: Sequence[ToolDescriptor]) -> str:
        """Build the system prompt with the tool catalog."""
        prompt = self.SYSTEM_PROMPT
        if tools:
            tools_info = []
            for tool in tools:
                line = f"- {tool.name}"
                if tool.input_schema and isinstance(tool.input_schema.get("properties"), dict):
                    params = ", ".join(tool.input_schema["properties"].keys())
                    line += f"({params})"
                if tool.description:
                    line += f": {tool.description}"
                tools_info.append(line)
            prompt += "\n\nAvailable tools:\n" + "\n".join(tools_info)
        return prompt

    @staticmethod
    def _build_user_message(
        prompt: str,
        history: Sequence[HistoryEntry],
        initial_operations: Sequence[InitialOperation],
    ) -> str:
        parts = [f"User's goal: {prompt}"]
        if history:
            dumped = [entry.model_dump(exclude_none=True) for entry in history]
            parts.append("Previous actions taken:\n" + json.dumps(dumped, indent=2, default=str))
        else:
            parts.append("No previous actions taken.")
        if initial_operations:
            lines = []
            for op in initial_operations:
                tags = f" [tags: {', '.join(op.tags)}]" if op.tags else ""
                summary = f" - {op.summary}" if op.summary else ""
                lines.append(f"- {op.operation_id} ({op.method.upper()} {op.path}){tags}{summary}")
            parts.append("Initial operation suggestions:\n" + "\n".join(lines))
        else:
            parts.append("No operation suggestions provided.")
        parts.append(
            "What should I do next?\n\nIMPORTANT: Respond with ONLY a valid JSON object. Do not wrap "
            "it in markdown code fences. Do not include any text before or after the JSON."
        )
        return "\n\n".join(parts)

    @staticmethod
    def _parse_response(content: str) -> Dict[str, Any]:
        """Parse the LLM text into a raw plan dict; non-JSON text becomes a final answer."""
        parsed = safe_parse_json(content)
        if not isinstance(parsed, dict):
            parsed = safe_parse_json(_sanitize_json_string(content))
        if isinstance(parsed, dict) and "action" in parsed:
            return parsed

        logger.warning("Planner response was not in the expected JSON format; using it as the answer")
        logger.debug("Raw planner response: %s", content[:200])
        return {"action": "final_answer", "answer": strip_json_fences(content).strip()}

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    async def plan(
        self,
        prompt: str,
        tools: Sequence[ToolDescriptor],
        history: Sequence[HistoryEntry],
        initial_operations: Sequence[InitialOperation] = (),
    ) -> Optional[Dict[str, Any]]:
        """
        Ask the backend for the next step.

        Returns
        -------
        dict | None
            The raw plan, or ``None`` when the backend answered with only whitespace.

        Raises
        ------
        PlannerError
            If the backend is unreachable or returns nothing at all.
        """
        content = await self.complete(
            self._build_system_prompt(tools),
            self._build_user_message(prompt, history, initial_operations),
            json_mode=True,
        )
        if content is None or content == "":
            raise PlannerError(f"{self.name} planner returned an empty response")
        if not content.strip():
            return None
        logger.debug("%s planner response: %s", self.name, content)
        return self._parse_response(content)


# ---------------------------------------------------------------------------
# Concrete planners
# ---------------------------------------------------------------------------
@register_planner("ci")
class CIPlanner(BasePlanner):
    """Deterministic planner for tests and CI: always answers without calling tools."""

    name = "ci"

    @property
    def model_name(self) -> str:
        return "ci"

    def is_configured(self) -> bool:
        return False

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        json_mode: bool = True,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> str:
        return json.dumps({"action": "final_answer", "answer": CI_ANSWER})


@register_planner("tgi")
class TGIPlanner(BasePlanner):
    """TGI-based planner over httpx."""

    name = "tgi"

    @property
    def model_name(self) -> str:
        return self._model or "tgi"

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        json_mode: bool = True,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> str:
        payload = {
            "inputs": f"{system_prompt}\n\nUser: {user_message}\n\nAssistant:",
            "parameters": {
                "max_new_tokens": max_tokens,
                "temperature": temperature,
                "stop": ["User:", "</s>"],
            },
        }
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                resp = await client.post(self.config.TGI_ENDPOINT, json=payload)
                resp.raise_for_status()
                return str(resp.json().get("generated_text", ""))
        except httpx.HTTPError as e:
            logger.error("TGI request error: %s", str(e))
            raise PlannerError(f"Error calling TGI endpoint: {e}") from e


@register_planner("openai")
class OpenAIPlanner(BasePlanner):
    """OpenAI chat-completions planner."""

    name = "openai"

    @property
    def model_name(self) -> str:
        return self._model or self.config.OPENAI_MODEL

    def is_configured(self) -> bool:
        return bool(self.config.OPENAI_API_KEY)

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        json_mode: bool = True,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> str:
        import openai  # pylint: disable=import-outside-toplevel

        if not self.is_configured():
            raise PlannerError("OpenAI API key is not configured")

        client = openai.AsyncOpenAI(api_key=self.config.OPENAI_API_KEY)
        kwargs: Dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            resp = await client.chat.completions.create(
                model=self.model_name,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs,
            )
        except openai.OpenAIError as e:
            logger.error("OpenAI planner error: %s", str(e))
            raise PlannerError(f"Error calling OpenAI: {e}") from e

        return resp.choices[0].message.content or ""


@register_planner("anthropic")
class AnthropicPlanner(BasePlanner):
    """Anthropic Claude-based planner."""

    name = "anthropic"

    @property
    def model_name(self) -> str:
        return self._model or self.config.ANTHROPIC_MODEL

    def is_configured(self) -> bool:
        return bool(self.config.ANTHROPIC_API_KEY)

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        json_mode: bool = True,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> str:
        import anthropic  # pylint: disable=import-outside-toplevel

        if not self.is_configured():
            raise PlannerError("Anthropic API key is not configured")

        client = anthropic.AsyncAnthropic(api_key=self.config.ANTHROPIC_API_KEY)
        try:
            response = await client.messages.create(
                model=self.model_name,
                max_tokens=max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_message}],
                temperature=temperature,
            )
        except anthropic.AnthropicError as e:
            logger.error("Anthropic planner error: %s", str(e))
            raise PlannerError(f"Error calling Anthropic: {e}") from e

        # Only text blocks carry the answer
        texts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        content = "".join(texts)
        # The Messages API has no JSON mode; keep just the object
        return _sanitize_json_string(content) if json_mode and content else content
