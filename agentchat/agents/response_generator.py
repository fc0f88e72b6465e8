from abc import ABC, abstractmethod
from typing import List, Optional

from agentchat.models.schemas import Agent, AgentRole
from config.settings import settings

ROLE_TEMPLATES = {
    AgentRole.RESEARCHER: (
        'As a researcher, I am analysing the topic "{topic}". {context}'
        'Let me offer a deeper analysis and additional sources.'
    ),
    AgentRole.SUPPORT: (
        'As a support agent, I am ready to help with "{topic}". {context}'
        'What exactly would you like to know?'
    ),
    AgentRole.CODER: (
        'As a programmer, I can help with the technical side of "{topic}". '
        '{context}I can suggest solutions at the code and architecture level.'
    ),
    AgentRole.WRITER: (
        'As a writer, I will help structure the information on "{topic}". '
        '{context}Let us produce clear, readable content.'
    ),
    AgentRole.ANALYST: (
        'As an analyst, I will break down "{topic}". {context}'
        'I will offer a structured analysis and conclusions.'
    ),
}

DEFAULT_TEMPLATE = (
    'As an AI assistant, I am ready to help with "{topic}". {context}'
    'What would you like to explore?'
)


class ResponseGenerator(ABC):
    """Produces one agent's contribution to a multi-agent conversation"""

    @abstractmethod
    async def generate(self, agent: Agent, topic: str, context: List[str],
                       turn: int) -> str:
        ...


class TemplateResponseGenerator(ResponseGenerator):
    """Deterministic role templates, used when MOCK_SERVICES is on"""

    async def generate(self, agent: Agent, topic: str, context: List[str],
                       turn: int) -> str:
        summary = ""
        if context:
            summary = f"Building on the discussion: " \
                      f"{' | '.join(context[-3:])}. "

        template = ROLE_TEMPLATES.get(agent.role, DEFAULT_TEMPLATE)
        response = template.format(topic=topic, context=summary)
        if turn > 0:
            response += f" This is my turn {turn + 1} in the discussion."
        return response


class LLMResponseGenerator(ResponseGenerator):
    """Completion-backed generator using the agent's system prompt"""

    def __init__(self, llm=None):
        if llm is None:
            from agentchat.services.llm_service import llm_service
            llm = llm_service
        self.llm = llm

    async def generate(self, agent: Agent, topic: str, context: List[str],
                       turn: int) -> str:
        system_prompt = agent.system_prompt or \
            f"You are {agent.name}, an AI agent with the role " \
            f"{agent.role.value}. Stay in role and be concise."
        history = [{"role": "model", "content": content}
                   for content in context]
        instruction = (
            f'You are taking part in a discussion between several agents '
            f'on the topic "{topic}". This is turn {turn + 1}. '
            f'Add your own perspective without repeating earlier points.'
        )
        result = await self.llm.generate(system_prompt, history, instruction)
        return result.text


def create_response_generator(mock: Optional[bool] = None
                              ) -> ResponseGenerator:
    use_templates = settings.MOCK_SERVICES if mock is None else mock
    if use_templates:
        return TemplateResponseGenerator()
    return LLMResponseGenerator()
