"""
Localization State Machine.

States:
- UNINITIALIZED: no baseframe yet
- NOT_LOCALIZED: had a baseframe, dropped it after a quality rejection
- LOCALIZED: baseframe known, localizations are corrections

Both unanchored states share one routing rule (route to baseframe
initialization); route() is the single place that encodes it.

    UNINITIALIZED --fit ok--> LOCALIZED
    NOT_LOCALIZED --fit ok--> LOCALIZED
    LOCALIZED --quality rejected--> NOT_LOCALIZED
"""

import logging
import threading
from enum import Enum, IntEnum

from violoc_core.errors import InvariantViolation

logger = logging.getLogger(__name__)


class LocalizationState(IntEnum):
    """Localization state of the fusion core."""
    
    UNINITIALIZED = 0
    NOT_LOCALIZED = 1
    LOCALIZED = 2


class Route(Enum):
    """Where an incoming localization is dispatched."""
    
    INITIALIZE = 'initialize'
    CORRECT = 'correct'


_ROUTES = {
    LocalizationState.UNINITIALIZED: Route.INITIALIZE,
    LocalizationState.NOT_LOCALIZED: Route.INITIALIZE,
    LocalizationState.LOCALIZED: Route.CORRECT,
}


def route(state: LocalizationState) -> Route:
    """
    Map a localization state to its routing target.
    
    Raises:
        InvariantViolation: For a value outside LocalizationState
    """
    try:
        return _ROUTES[state]
    except KeyError:
        raise InvariantViolation(f"Unknown localization state: {state!r}") from None


class LocalizationStateMachine:
    """
    Owns the LocalizationState and its transitions.
    
    Usage:
        machine = LocalizationStateMachine()
        if machine.route() is Route.INITIALIZE:
            if fit_succeeded:
                machine.mark_localized()
        else:
            if quality_rejected:
                machine.mark_not_localized()
    """
    
    def __init__(self, initial_state: LocalizationState = LocalizationState.UNINITIALIZED):
        """
        Initialize state machine.
        
        Args:
            initial_state: LOCALIZED when the estimator anchors itself
        """
        self._lock = threading.Lock()
        self._initial_state = LocalizationState(initial_state)
        self._state = self._initial_state
        self._num_localized_transitions = 0
    
    @property
    def state(self) -> LocalizationState:
        return self._state
    
    @property
    def transition_count(self) -> int:
        """Number of transitions into LOCALIZED."""
        return self._num_localized_transitions
    
    def route(self) -> Route:
        """Routing target for the current state."""
        return route(self._state)
    
    def mark_localized(self) -> bool:
        """
        Transition to LOCALIZED after a successful baseframe fit.
        
        Returns:
            True if the state changed
        """
        with self._lock:
            if self._state == LocalizationState.LOCALIZED:
                return False
            previous = self._state
            self._state = LocalizationState.LOCALIZED
            self._num_localized_transitions += 1
        
        logger.info(f"Localization state {previous.name} -> LOCALIZED")
        return True
    
    def mark_not_localized(self) -> bool:
        """
        Drop back to NOT_LOCALIZED after a quality rejection.
        
        Returns:
            True if the state changed
        """
        with self._lock:
            if self._state != LocalizationState.LOCALIZED:
                return False
            self._state = LocalizationState.NOT_LOCALIZED
        
        logger.warning("Localization state LOCALIZED -> NOT_LOCALIZED")
        return True
    
    def reset(self):
        """Return to the initial state."""
        with self._lock:
            self._state = self._initial_state
            self._num_localized_transitions = 0
