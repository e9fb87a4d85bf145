"""
Handler registry.

Maps a job type tag to the callable that executes it, plus that type's
retry policy and timeout. Built once at startup (directly or through
`load_hooks`) and frozen before the worker pool starts; resolving an
unregistered type raises `UnknownJobTypeError`.

Handlers take the job payload dict. They may be coroutine functions or plain
functions (run in a worker thread). Returning means success; raising
`TerminalError` dead-letters the job; any other exception is a retryable
failure.
"""
from __future__ import annotations

import asyncio
import importlib
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

import structlog

from ..exceptions import ConfigurationError, UnknownJobTypeError
from .retry_policy import RetryPolicy

logger = structlog.get_logger(__name__)

Handler = Callable[[Dict[str, Any]], Union[Awaitable[Any], Any]]


@dataclass(frozen=True)
class HandlerSpec:
    job_type: str
    func: Handler
    retry_policy: RetryPolicy
    timeout_seconds: Optional[float] = None

    async def invoke(self, payload: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(payload)
        result = await asyncio.to_thread(self.func, payload)
        if inspect.isawaitable(result):
            return await result
        return result


class HandlerRegistry:
    def __init__(self, default_policy: Optional[RetryPolicy] = None) -> None:
        self.default_policy = default_policy or RetryPolicy()
        self._handlers: Dict[str, HandlerSpec] = {}
        self._policies: Dict[str, RetryPolicy] = {}
        self._frozen = False

    def register(
        self,
        job_type: str,
        func: Optional[Handler] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Register `func` for `job_type`. Without `func`, returns a decorator::

            @registry.register("send_report", timeout_seconds=30)
            async def send_report(payload): ...
        """
        if func is None:
            def decorator(f: Handler) -> Handler:
                self.register(job_type, f, retry_policy=retry_policy, timeout_seconds=timeout_seconds)
                return f
            return decorator

        if self._frozen:
            raise ConfigurationError("Handler registry is frozen; register handlers before startup completes")
        if job_type in self._handlers:
            raise ConfigurationError(f"Handler for job type '{job_type}' registered twice")
        if not callable(func):
            raise ConfigurationError(f"Handler for job type '{job_type}' is not callable")

        policy = retry_policy or self._policies.get(job_type) or self.default_policy
        self._handlers[job_type] = HandlerSpec(job_type, func, policy, timeout_seconds)
        logger.info("handler_registered", job_type=job_type, timeout_seconds=timeout_seconds)
        return func

    def set_policy(self, job_type: str, policy: RetryPolicy, timeout_seconds: Optional[float] = None) -> None:
        """Override a type's policy from configuration, before or after its handler registers."""
        if self._frozen:
            raise ConfigurationError("Handler registry is frozen")
        self._policies[job_type] = policy
        spec = self._handlers.get(job_type)
        if spec is not None:
            self._handlers[job_type] = HandlerSpec(
                job_type,
                spec.func,
                policy,
                timeout_seconds if timeout_seconds is not None else spec.timeout_seconds,
            )

    def resolve(self, job_type: str) -> HandlerSpec:
        spec = self._handlers.get(job_type)
        if spec is None:
            raise UnknownJobTypeError(job_type)
        return spec

    def policy_for(self, job_type: str) -> RetryPolicy:
        spec = self._handlers.get(job_type)
        if spec is not None:
            return spec.retry_policy
        return self._policies.get(job_type, self.default_policy)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    @property
    def job_types(self) -> Iterable[str]:
        return tuple(self._handlers)

    def freeze(self) -> None:
        self._frozen = True

    def load_hooks(self, hooks: Iterable[str]) -> None:
        """Call each ``"package.module:function"`` hook with this registry."""
        for hook in hooks:
            module_name, _, attr = hook.partition(":")
            if not module_name or not attr:
                raise ConfigurationError(f"Handler hook '{hook}' must look like 'package.module:function'")
            try:
                module = importlib.import_module(module_name)
                register = getattr(module, attr)
            except (ImportError, AttributeError) as e:
                raise ConfigurationError(f"Cannot load handler hook '{hook}': {e}") from e
            register(self)
            logger.info("handler_hook_loaded", hook=hook)
