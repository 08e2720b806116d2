"""
Lifecycle hook decorators and the hook pipeline.

Hooks are plain methods marked with one of the decorators below. They are
collected once per model class (inherited hooks first, then in definition
order) into that class's schema and never mutated afterwards.

Instance hooks (``*_save``, ``*_create``, ``*_update``, ``*_delete``,
``after_find``) receive the model instance. Query hooks (``before_find``,
``before_fetch``) receive the model class and the query builder;
``after_fetch`` receives the class and the list of loaded models.

A *before* hook returning literal ``False`` aborts the operation: nothing is
written or read and the caller gets a no-op result, not an exception.
Hooks may be coroutines.

Example:
    >>> class User(Model):
    ...     email: str
    ...
    ...     @before_save
    ...     def normalize_email(self):
    ...         self.email = self.email.lower()
    ...
    ...     @before_delete
    ...     async def protect_admins(self):
    ...         return not await self.is_admin()
    ...
    ...     @before_fetch
    ...     def hide_archived(cls, query):
    ...         query.where_not("archived", True)
"""

import inspect
import logging
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])

HOOK_EVENTS = (
    "before_save",
    "after_save",
    "before_create",
    "after_create",
    "before_update",
    "after_update",
    "before_delete",
    "after_delete",
    "before_find",
    "after_find",
    "before_fetch",
    "after_fetch",
)

# Fixed ordering of hook events around each store operation.
PIPELINES: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    "create": (("before_save", "before_create"), ("after_create", "after_save")),
    "update": (("before_save", "before_update"), ("after_update", "after_save")),
    "delete": (("before_delete",), ("after_delete",)),
    "find": (("before_find",), ("after_find",)),
    "fetch": (("before_fetch",), ("after_fetch",)),
}

_HOOK_MARKER = "_hook_events"


def _mark(event: str) -> Callable[[F], F]:
    def decorator(func: F) -> F:
        events = list(getattr(func, _HOOK_MARKER, ()))
        events.append(event)
        setattr(func, _HOOK_MARKER, tuple(events))  # type: ignore[attr-defined]
        return func
    decorator.__name__ = event
    decorator.__doc__ = f"Mark a method to run as a '{event}' hook."
    return decorator


before_save = _mark("before_save")
after_save = _mark("after_save")
before_create = _mark("before_create")
after_create = _mark("after_create")
before_update = _mark("before_update")
after_update = _mark("after_update")
before_delete = _mark("before_delete")
after_delete = _mark("after_delete")
before_find = _mark("before_find")
after_find = _mark("after_find")
before_fetch = _mark("before_fetch")
after_fetch = _mark("after_fetch")


def hook(event: str) -> Callable[[F], F]:
    """
    Register a method for an event by name.

    Example:
        >>> @hook("before_create")
        ... def assign_slug(self):
        ...     self.slug = slugify(self.title)
    """
    if event not in HOOK_EVENTS:
        raise ValueError(f"Unknown hook event '{event}'. Known events: {', '.join(HOOK_EVENTS)}")
    return _mark(event)


def hook_events_of(attr: Any) -> tuple[str, ...]:
    """Events an attribute was registered for (empty if it is not a hook)."""
    if isinstance(attr, (staticmethod, classmethod)):
        attr = attr.__func__
    return tuple(getattr(attr, _HOOK_MARKER, ()))


def collect_hooks(cls: type) -> dict[str, tuple[Callable[..., Any], ...]]:
    """
    Collect hooks from a class and its bases.

    Base-class hooks run before subclass hooks; a subclass overriding a hook
    method by name replaces it.
    """
    ordered: dict[str, Callable[..., Any]] = {}
    for klass in reversed(cls.__mro__):
        for name, attr in vars(klass).items():
            if name.startswith("__"):
                continue
            if hook_events_of(attr):
                ordered.pop(name, None)
                ordered[name] = attr
            elif name in ordered:
                # Overridden by a plain attribute
                del ordered[name]

    registry: dict[str, list[Callable[..., Any]]] = {event: [] for event in HOOK_EVENTS}
    for attr in ordered.values():
        func = attr.__func__ if isinstance(attr, (staticmethod, classmethod)) else attr
        for event in hook_events_of(func):
            registry[event].append(func)
    return {event: tuple(funcs) for event, funcs in registry.items()}


async def _call(func: Callable[..., Any], *args: Any) -> Any:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def run_hooks(hooks: dict[str, tuple[Callable[..., Any], ...]], event: str, *args: Any) -> bool:
    """
    Run every hook registered for ``event`` in order.

    Returns:
        False if a *before* hook returned literal False (remaining hooks are
        skipped), True otherwise. Exceptions propagate.
    """
    for func in hooks.get(event, ()):
        result = await _call(func, *args)
        if result is False and event.startswith("before_"):
            logger.debug(f"Hook {func.__qualname__} aborted '{event}'")
            return False
    return True


async def run_before(hooks: dict[str, tuple[Callable[..., Any], ...]], operation: str, *args: Any) -> bool:
    """Run the *before* stage of ``operation``; False means abort."""
    before, _ = PIPELINES[operation]
    for event in before:
        if not await run_hooks(hooks, event, *args):
            return False
    return True


async def run_after(hooks: dict[str, tuple[Callable[..., Any], ...]], operation: str, *args: Any) -> None:
    """Run the *after* stage of ``operation``."""
    _, after = PIPELINES[operation]
    for event in after:
        await run_hooks(hooks, event, *args)
