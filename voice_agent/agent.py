"""Iterative tool-calling agent loop."""

import asyncio
import inspect
import json
import logging
import re
from dataclasses import dataclass, field

from voice_agent._types import AgentResult, AgentStatus, ToolCall
from voice_agent.llm import ChatProvider, Message, TokenCallback
from voice_agent.tools import ToolDescriptor, ToolRegistry

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful local Agent.\n"
    "Output exactly one line of JSON to call a tool:\n"
    '{"tool":"<name>","args":{...}}\n'
    "or finish with:\n"
    "FINAL: <answer>\n"
    "Never invent tool results. Keep answers concise. Stop when done."
)

INVALID_CALL_MESSAGE = "Please provide a valid tool JSON or a FINAL answer."
STEP_LIMIT_MESSAGE = "Step limit reached without FINAL."

_FINAL_PREFIX = re.compile(r"^FINAL:\s*")


@dataclass
class AgentRunState:
    """Conversation and progress of a single run."""

    history: list[Message]
    max_steps: int
    steps_taken: int = 0
    status: AgentStatus = AgentStatus.RUNNING
    tool_calls: list[ToolCall] = field(default_factory=list)


def parse_tool_call(text: str) -> ToolCall | None:
    """Extract the last well-formed tool call from a model reply.

    Scans lines from the end for one that starts with "{" and decodes to an
    object with a string "tool" and an object (or absent) "args".
    """
    for line in reversed(text.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            payload = json.loads(line)
        except ValueError:
            continue
        if not isinstance(payload, dict) or not isinstance(payload.get("tool"), str):
            continue
        args = payload.get("args")
        if args is None:
            args = {}
        if not isinstance(args, dict):
            continue
        return ToolCall(tool=payload["tool"], args=args)
    return None


class AgentLoop:
    """Asks the model for tool calls until it gives a final answer.

    Bad calls and tool failures go back to the model as corrective turns and
    cost a step each. A failed model call ends the run.
    """

    def __init__(
        self,
        provider: ChatProvider,
        registry: ToolRegistry,
        max_steps: int = 6,
        observation_limit: int = 4000,
    ):
        if max_steps <= 0:
            raise ValueError("max_steps must be positive")
        self.provider = provider
        self.registry = registry
        self.max_steps = max_steps
        self.observation_limit = observation_limit
        self.last_run: AgentRunState | None = None

    def system_message(self) -> Message:
        return {
            "role": "system",
            "content": f"{SYSTEM_PROMPT}\n\nAvailable tools:\n{self.registry.catalog()}",
        }

    async def run(
        self,
        messages: list[Message],
        max_steps: int | None = None,
        on_token: TokenCallback | None = None,
    ) -> AgentResult:
        """Run the loop on a conversation.

        Args:
            messages: Caller messages appended after the system prompt
            max_steps: Step budget; defaults to the loop's configured budget
            on_token: Optional streaming callback for model output

        Returns:
            AgentResult with FINISHED, FAILED or STEP_LIMIT_REACHED status
        """
        budget = max_steps or self.max_steps
        state = AgentRunState(history=[self.system_message(), *messages], max_steps=budget)
        self.last_run = state
        logger.info("Starting agent with %d initial messages, budget %d", len(messages), budget)

        while state.steps_taken < state.max_steps:
            state.steps_taken += 1
            logger.debug("Agent step %d/%d", state.steps_taken, state.max_steps)

            try:
                reply = await self.provider.complete(state.history, on_token=on_token)
            except Exception as e:
                logger.error("Model call failed on step %d: %s", state.steps_taken, e)
                state.status = AgentStatus.FAILED
                return AgentResult(AgentStatus.FAILED, f"LLM error: {e}", state.steps_taken)

            out = (reply or "").strip()
            logger.debug("Model reply: %s", out[:200])

            if out.startswith("FINAL:"):
                state.status = AgentStatus.FINISHED
                logger.info("Agent finished in %d steps", state.steps_taken)
                return AgentResult(AgentStatus.FINISHED, _FINAL_PREFIX.sub("", out), state.steps_taken)

            state.history.append({"role": "assistant", "content": out})
            state.history.append({"role": "user", "content": await self._respond(out, state)})

        state.status = AgentStatus.STEP_LIMIT_REACHED
        logger.warning("Agent reached step limit of %d", state.max_steps)
        return AgentResult(AgentStatus.STEP_LIMIT_REACHED, STEP_LIMIT_MESSAGE, state.steps_taken)

    async def _respond(self, reply: str, state: AgentRunState) -> str:
        """Build the user turn that answers a non-final model reply."""
        call = parse_tool_call(reply)
        if call is None:
            logger.info("Unparseable tool call, asking for correction")
            return INVALID_CALL_MESSAGE

        tool = self.registry.get(call.tool)
        if tool is None:
            logger.info("Unknown tool requested: %s", call.tool)
            return f'Tool "{call.tool}" not found. Available tools: {", ".join(self.registry.names())}'

        problems = self.registry.validate(call)
        if problems:
            logger.info("Invalid arguments for %s: %s", call.tool, "; ".join(problems))
            return (
                f'Invalid arguments for tool "{call.tool}": {"; ".join(problems)}. '
                f"Expected args={json.dumps(dict(tool.schema))}"
            )

        state.tool_calls.append(call)
        logger.info("Executing %s", call.tool)
        try:
            result = await self._execute(tool, call.args)
        except Exception as e:
            logger.warning("Tool %s failed: %s", call.tool, e)
            return f"OBSERVATION ({call.tool}) ERROR: {e}"

        observation = json.dumps(result, default=str)[: self.observation_limit]
        return f"OBSERVATION ({call.tool}): {observation}"

    async def _execute(self, tool: ToolDescriptor, args: dict):
        if inspect.iscoroutinefunction(tool.run):
            return await tool.run(args)
        result = await asyncio.to_thread(tool.run, args)
        if inspect.isawaitable(result):
            result = await result
        return result
