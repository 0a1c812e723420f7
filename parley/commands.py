from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .config import CommandConfig


class CommandAction(str, Enum):
    BUILTIN = "builtin"
    SEND_WITH_PROMPT = "send_with_prompt"


class BuiltinKind(str, Enum):
    CLEAR_HISTORY = "clear_history"
    CLEAR_ALL_HISTORY = "clear_all_history"
    CANCEL = "cancel"
    RESET_PARAMETERS = "reset_parameters"


TEXT_PLACEHOLDER = "{text}"


@dataclass(frozen=True)
class Command:
    id: str
    key: Optional[str]
    description: str
    action: CommandAction = CommandAction.SEND_WITH_PROMPT
    builtin: Optional[BuiltinKind] = None
    model: Optional[str] = None
    prompt_template: Optional[str] = None
    system_prompt: Optional[str] = None
    parameter_overrides: Dict[str, Any] = field(default_factory=dict)

    def render_prompt(self, text: str) -> str:
        template = self.prompt_template
        if not template:
            return text
        if TEXT_PLACEHOLDER in template:
            return template.replace(TEXT_PLACEHOLDER, text)
        if not text:
            return template
        return f"{template}\n\n{text}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "description": self.description,
            "action": self.action.value,
            "builtin": self.builtin.value if self.builtin else None,
            "model": self.model,
            "prompt_template": self.prompt_template,
            "system_prompt": self.system_prompt,
            "parameter_overrides": dict(self.parameter_overrides),
        }


DEFAULT_COMMANDS: List[Command] = [
    Command(
        id="refactor-code",
        key="r",
        description="Refactor code",
        prompt_template="Refactor the following code, keeping its behaviour unchanged:\n\n{text}",
        system_prompt="You are an expert programmer. Reply with the refactored code and a short summary.",
        parameter_overrides={"temperature": 0.2},
    ),
    Command(
        id="describe-code",
        key="d",
        description="Describe code",
        prompt_template="Describe what the following code does:\n\n{text}",
    ),
    Command(
        id="proofread",
        key="p",
        description="Proofread text",
        prompt_template="Proofread the following text and return the corrected version:\n\n{text}",
        parameter_overrides={"temperature": 0.3, "top_p": 0.7},
    ),
    Command(
        id="make-concise",
        key="z",
        description="Make text concise",
        prompt_template="Rewrite the following text to be as concise as possible without losing meaning:\n\n{text}",
    ),
    Command(
        id="git-commit",
        key="g",
        description="Write a commit message",
        prompt_template="Write a concise git commit message for the following changes:\n\n{text}",
        parameter_overrides={"temperature": 0.4},
    ),
    Command(
        id="clear-history",
        key="x",
        description="Clear history of the current model",
        action=CommandAction.BUILTIN,
        builtin=BuiltinKind.CLEAR_HISTORY,
    ),
    Command(
        id="clear-all-history",
        key="X",
        description="Clear every model's history",
        action=CommandAction.BUILTIN,
        builtin=BuiltinKind.CLEAR_ALL_HISTORY,
    ),
    Command(
        id="cancel",
        key="k",
        description="Cancel the active exchange",
        action=CommandAction.BUILTIN,
        builtin=BuiltinKind.CANCEL,
    ),
    Command(
        id="reset-parameters",
        key="0",
        description="Reset request parameters to defaults",
        action=CommandAction.BUILTIN,
        builtin=BuiltinKind.RESET_PARAMETERS,
    ),
]


def command_from_config(config: CommandConfig) -> Command:
    return Command(
        id=config.id,
        key=config.key,
        description=config.description or config.id,
        model=config.model,
        prompt_template=config.prompt_template,
        system_prompt=config.system_prompt,
        parameter_overrides=dict(config.parameter_overrides),
    )


def build_command_table(extra: Iterable[CommandConfig] = ()) -> Dict[str, Command]:
    table = {command.id: command for command in DEFAULT_COMMANDS}
    for config in extra:
        table[config.id] = command_from_config(config)
    return table
