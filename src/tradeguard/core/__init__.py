"""Clock, shared types, errors and the adaptive cycle timer."""
