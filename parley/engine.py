import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .commands import BuiltinKind, Command, CommandAction, build_command_table
from .config import AppSettings
from .errors import UnknownCommandError
from .events import EventBus
from .history import ConversationStore
from .multishot import MultishotSequencer, MultishotState
from .orchestrator import RequestOrchestrator
from .parameters import ParameterSet
from .providers import ProviderAdapter, build_providers
from .registry import ModelInfo, ModelRegistry
from .resolver import ModelResolver
from .schemas import ExchangeResult, Message, SessionSnapshot


logger = logging.getLogger("uvicorn.error")


class Engine:
    """Owns every store and collaborator for one chat session.

    Nothing is shared between instances, so several engines can run side by
    side (tests rely on this).
    """

    def __init__(
        self,
        settings: AppSettings,
        *,
        providers: Optional[Dict[str, ProviderAdapter]] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.events = events or EventBus()
        self._owns_providers = providers is None
        self.providers = providers if providers is not None else build_providers(settings)
        self.registry = ModelRegistry(self.providers, ttl_s=settings.registry_ttl_s, clock=clock)
        self.resolver = ModelResolver(self.registry, settings.default_model)
        self.history = ConversationStore(settings.max_history_pairs)
        self.parameters = ParameterSet(settings.parameter_defaults, settings.parameter_profiles)
        self.orchestrator = RequestOrchestrator(
            self.registry,
            self.resolver,
            self.history,
            self.parameters,
            self.events,
            rate_interval_s=settings.token_rate_interval_s,
            clock=clock,
        )
        self.orchestrator.system_prompt = settings.system_prompt
        self.multishot = MultishotSequencer(self.orchestrator, self.events)
        self.commands: Dict[str, Command] = build_command_table(settings.commands)
        self._builtins: Dict[BuiltinKind, Callable[[], Awaitable[Any]]] = {
            BuiltinKind.CLEAR_HISTORY: self._clear_current_history,
            BuiltinKind.CLEAR_ALL_HISTORY: self.clear_all_history,
            BuiltinKind.CANCEL: self.cancel,
            BuiltinKind.RESET_PARAMETERS: self.reset_parameters,
        }

    @property
    def current_model(self) -> Optional[str]:
        return self.orchestrator.active_model

    def set_model(self, model: Optional[str]) -> None:
        self.orchestrator.active_model = model or None

    @property
    def system_prompt(self) -> Optional[str]:
        return self.orchestrator.system_prompt

    def set_system_prompt(self, text: Optional[str]) -> None:
        self.orchestrator.system_prompt = text or None

    @property
    def suffix(self) -> Optional[str]:
        return self.orchestrator.suffix

    def set_suffix(self, text: Optional[str]) -> None:
        self.orchestrator.suffix = text or None

    async def send(
        self,
        prompt: str,
        model: Optional[str] = None,
        parameter_overrides: Optional[Mapping[str, Any]] = None,
    ) -> ExchangeResult:
        return await self.orchestrator.send(
            prompt,
            model,
            include_history=False,
            parameter_overrides=dict(parameter_overrides or {}),
        )

    async def send_with_history(
        self,
        prompt: str,
        model: Optional[str] = None,
        parameter_overrides: Optional[Mapping[str, Any]] = None,
    ) -> ExchangeResult:
        return await self.orchestrator.send(
            prompt,
            model,
            include_history=True,
            parameter_overrides=dict(parameter_overrides or {}),
        )

    async def cancel(self) -> bool:
        return await self.orchestrator.cancel()

    async def start_multishot(self, prompt: str, models: Sequence[str]) -> MultishotState:
        return await self.multishot.start(prompt, models)

    async def apply_parameter_profile(self, name: str) -> Dict[str, Any]:
        self.parameters.apply_named_profile(name)
        return await self._parameters_changed()

    async def set_parameters(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        self.parameters.update(values)
        return await self._parameters_changed()

    async def reset_parameters(self) -> Dict[str, Any]:
        self.parameters.reset()
        return await self._parameters_changed()

    def get_history(self, model: Optional[str] = None) -> List[Message]:
        target = model or self.current_model
        if not target:
            return []
        return self.history.get(target)

    def replace_history(self, model: str, messages: Iterable[Any]) -> None:
        self.history.replace(model, messages)

    async def clear_history(self, model: str) -> None:
        self.history.clear(model)
        await self.events.emit("history_cleared", {"model": model})

    async def clear_all_history(self) -> None:
        self.history.clear_all()
        await self.events.emit("history_cleared", {"model": None})

    async def list_models(self) -> List[ModelInfo]:
        return await self.registry.list_models()

    async def status(self) -> Dict[str, Any]:
        return {
            "server_reachable": await self.registry.is_server_reachable(),
            "current_model": self.current_model,
            "default_model": self.resolver.default_model,
            "orchestrator": self.orchestrator.status(),
            "multishot": self.multishot.state.to_dict() if self.multishot.state else None,
            "parameters": self.parameters.to_dict(),
            "history_models": self.history.models(),
        }

    def export_state(self) -> Dict[str, Any]:
        snapshot = SessionSnapshot(current_model=self.current_model, history_by_model=self.history.snapshot())
        return snapshot.model_dump()

    def import_state(self, data: Mapping[str, Any]) -> None:
        snapshot = SessionSnapshot.model_validate(data)
        self.history.clear_all()
        for model, messages in snapshot.history_by_model.items():
            self.history.replace(model, messages)
        self.set_model(snapshot.current_model)

    async def run_command(self, command_id: str, text: str = "") -> Optional[ExchangeResult]:
        command = self.commands.get(command_id)
        if command is None:
            raise UnknownCommandError(command_id)
        if command.action is CommandAction.BUILTIN:
            handler = self._builtins[command.builtin]  # type: ignore[index]
            await handler()
            return None
        return await self.orchestrator.send(
            command.render_prompt(text),
            command.model,
            include_history=False,
            system_prompt=command.system_prompt,
            parameter_overrides=dict(command.parameter_overrides),
        )

    async def apply_settings(self, settings: AppSettings) -> None:
        """Bring every collaborator in line with new settings, keeping histories."""
        previous, self.settings = self.settings, settings
        self.resolver.default_model = settings.default_model
        self.registry.ttl_s = settings.registry_ttl_s
        self.registry.refresh_after_s = settings.registry_ttl_s / 2
        self.orchestrator.rate_interval_s = settings.token_rate_interval_s
        self.history.resize(settings.max_history_pairs)
        if settings.system_prompt != previous.system_prompt:
            self.set_system_prompt(settings.system_prompt)
        if (
            settings.parameter_defaults != previous.parameter_defaults
            or settings.parameter_profiles != previous.parameter_profiles
        ):
            parameters = ParameterSet(settings.parameter_defaults, settings.parameter_profiles)
            parameters.carry_over(self.parameters)
            self.parameters = parameters
            self.orchestrator.parameters = parameters
            await self._parameters_changed()
        self.commands = build_command_table(settings.commands)
        if self._owns_providers and _provider_settings(settings) != _provider_settings(previous):
            await self.orchestrator.cancel()
            old = list(self.providers.values())
            self.providers = build_providers(settings)
            await self.registry.close()
            self.registry.providers = self.providers
            self.registry.invalidate()
            logger.info("Rebuilt providers: %s", ", ".join(self.providers))
            await _close_providers(old)

    async def close(self) -> None:
        await self.orchestrator.cancel()
        await self.registry.close()
        await _close_providers(self.providers.values())

    async def _clear_current_history(self) -> None:
        if self.current_model:
            await self.clear_history(self.current_model)

    async def _parameters_changed(self) -> Dict[str, Any]:
        data = self.parameters.to_dict()
        await self.events.emit("parameters_changed", {"profile": data["profile"], "modified": data["modified"]})
        return data


def _provider_settings(settings: AppSettings) -> Dict[str, Any]:
    return settings.model_dump(
        include={
            "ollama_base_url",
            "request_timeout_s",
            "connect_timeout_s",
            "max_malformed_fragments",
            "cloud_providers",
        }
    )


async def _close_providers(providers: Iterable[ProviderAdapter]) -> None:
    for provider in providers:
        try:
            await provider.close()
        except Exception as exc:
            logger.warning("Closing provider %s failed: %s", provider.id, exc)
