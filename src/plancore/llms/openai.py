import os
import json
import openai
import logging
from typing import List, Optional, Dict, Any

from pydantic import BaseModel

from .llm_provider import ProviderError

# Suppress httpx logs to reduce noise from API requests
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


# ---- Structured-output envelope --------------------------------------------------
# Strict structured outputs need every field required and no free-form objects,
# so arguments travel as a JSON string and are parsed by the plan normalizer.
class PlanStepOut(BaseModel):
    id: str
    description: str
    tool: str
    arguments_json: str
    dependencies: List[str]
    parallel: bool


class PlanSignalsOut(BaseModel):
    needs: List[str]
    no_discovery_path: List[str]
    errors: List[str]
    suggested_next_step: str
    failure_patterns: List[str]


class PlanOut(BaseModel):
    reasoning: str
    steps: List[PlanStepOut]
    signals: PlanSignalsOut


def plan_out_to_payload(parsed: PlanOut) -> Dict[str, Any]:
    """Loose planner payload understood by the plan normalizer."""
    signals = parsed.signals.model_dump()
    if not signals.get("suggested_next_step"):
        signals["suggested_next_step"] = None
    return {
        "reasoning": parsed.reasoning,
        "steps": [
            {
                "id": step.id or None,
                "description": step.description,
                "tool": step.tool or None,
                "arguments": step.arguments_json,
                "dependsOn": step.dependencies,
                "parallel": step.parallel,
            }
            for step in parsed.steps
        ],
        "signals": signals,
    }


class OpenAI:
    """
    A class for interacting with the OpenAI API.
    """
    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4o"):
        """
        Initialize the OpenAI client.

        Parameters:
        -----------
        api_key : str
            The API key for the OpenAI API.
        model : str, optional
            The model to use for the OpenAI API.
        """
        if api_key is None:
            api_key = os.getenv("OPENAI_API_KEY")

        self.client = openai.OpenAI(api_key=api_key)
        self.model = model

    def get_config(self) -> Dict[str, Any]:
        """Returns a serializable configuration for the OpenAI provider."""
        return {
            "provider": "openai",
            "model": self.model
        }

    def create_plan(self, goal: str, strategy: str, prompts: Dict[str, Any]) -> Dict[str, Any]:
        """
        Generate a plan with structured outputs.

        Parameters:
        -----------
        goal : str
            The user goal the plan addresses.
        strategy : str
            Strategy tag, passed through to the prompt.
        prompts : dict
            system_prompt, user_prompt and available_tools.

        Returns:
        --------
        Dict[str, Any]
            {"reasoning": ..., "steps": [...], "signals": {...}}
        """
        tools = prompts.get("available_tools") or []
        system_msg = {
            "role": "system",
            "content": prompts.get("system_prompt") or (
                f"You are a {strategy} planner. Break the goal into steps that call the listed tools."
            ),
        }
        user_msg = {
            "role": "user",
            "content": (
                f"{prompts.get('user_prompt') or goal}\n\n"
                f"AVAILABLE TOOLS:\n{json.dumps(tools, indent=2, default=str)}"
            ),
        }

        response = self.client.responses.parse(
            model=self.model,
            input=[system_msg, user_msg],
            text_format=PlanOut
        )

        parsed = response.output_parsed
        if parsed is None:
            raise ProviderError("OpenAI returned no parsable plan")
        logger.debug(f"OpenAI plan with {len(parsed.steps)} steps for goal {goal!r}")
        return plan_out_to_payload(parsed)

    def call(self, messages: List[Dict[str, str]]) -> str:
        """
        Free-text completion over chat-style messages.

        Parameters:
            messages (list): [{"role": ..., "content": ...}, ...]

        Returns:
            str: The generated text.
        """
        response = self.client.responses.create(
            model=self.model,
            input=messages)

        return response.output_text
