"""
Registration of computation kinds and ordered sets of actions.

`ActionRegistry` maps action keywords to factories.  It is an ordinary
object created by the host (usually with `default_action_registry()`)
and handed to whatever builds the actions; nothing is registered
globally at import time.

`ActionSet` keeps actions in the order given by the host and enforces
that the dependency graph between their Values is acyclic: an action is
only accepted if every Value it consumes is a host input or the output
of an action added before it.
"""

import functools
import logging
from typing import Callable, Dict, List, Optional

from .exceptions import ConfigurationError
from .grid import EvaluateFunctionOnGrid
from .symmetry import SymmetryFunction

logger = logging.getLogger(__name__)

__all__ = ['ActionRegistry', 'ActionSet', 'default_action_registry']


class ActionRegistry:
    """Action keyword -> factory returning a configured action."""

    def __init__(self):
        self._factories: Dict[str, Callable] = {}

    def register(self, keyword: str, factory: Callable):
        keyword = keyword.upper()
        if keyword in self._factories:
            raise ConfigurationError(
                "action already registered: {}".format(keyword))
        self._factories[keyword] = factory

    def create(self, keyword: str, *args, **kwargs):
        try:
            factory = self._factories[keyword.upper()]
        except KeyError:
            raise ConfigurationError(
                "unknown action: {} (available: {})".format(
                    keyword, ", ".join(self.keywords()))) from None
        return factory(*args, **kwargs)

    def keywords(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, keyword):
        return keyword.upper() in self._factories


def default_action_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("TETRAHEDRAL",
                      functools.partial(SymmetryFunction, "tetrahedral"))
    registry.register("COORDINATIONNUMBER",
                      functools.partial(SymmetryFunction, "coordination",
                                        normalized=False))
    registry.register("SIMPLECUBIC",
                      functools.partial(SymmetryFunction, "simplecubic"))
    registry.register("EVALUATE_FUNCTION_FROM_GRID", EvaluateFunctionOnGrid)
    return registry


class ActionSet:
    """
    Actions in host-defined order with an acyclic dependency graph.

    Example:
        >>> actions = ActionSet()
        >>> actions.add("tt", SymmetryFunction("tetrahedral", switch=sw))
        >>> actions.run(positions, neighbor_provider=nbl)
    """

    def __init__(self):
        self._actions: Dict[str, object] = {}
        self._producers: Dict[int, str] = {}
        self._inputs: Dict[int, object] = {}

    def __len__(self):
        return len(self._actions)

    def __getitem__(self, label):
        return self._actions[label]

    def labels(self) -> List[str]:
        return list(self._actions)

    def add_input(self, value):
        """Register a Value supplied by the host."""
        self._inputs[id(value)] = value
        return value

    def _known(self, value) -> bool:
        return id(value) in self._inputs or id(value) in self._producers

    def add(self, label: str, action):
        if label in self._actions:
            raise ConfigurationError(
                "duplicate action label: {}".format(label))
        outputs = {id(v) for v in action.outputs}
        for arg in getattr(action, "arguments", []):
            if id(arg) in outputs:
                raise ConfigurationError(
                    "action {} depends on its own output {}".format(
                        label, arg.name))
            if not self._known(arg):
                raise ConfigurationError(
                    "action {} uses {}, which is not produced by any "
                    "earlier action".format(label, arg.name))
        for value in action.outputs:
            if self._known(value):
                raise ConfigurationError(
                    "value {} already has a producer".format(value.name))
            self._producers[id(value)] = label
        self._actions[label] = action
        logger.debug("added action %s (%s)", label,
                     type(action).__name__)
        return action

    def producer_of(self, value) -> Optional[str]:
        return self._producers.get(id(value))

    def run(self, positions=None, neighbor_provider=None, active=None,
            tasks=None, cores=None, order=None):
        """
        One pass over all actions in the order they were added.

        `active` and `tasks` only concern actions that read positions;
        `cores` and `order` are handed to every action.
        """
        for label, action in self._actions.items():
            if action.needs_positions:
                if positions is None:
                    raise ConfigurationError(
                        "action {} needs positions".format(label))
                action.calculate(positions, neighbor_provider, tasks=tasks,
                                 active=active, cores=cores, order=order)
            else:
                action.calculate(cores=cores, order=order)
        return {label: action.outputs for label, action
                in self._actions.items()}
