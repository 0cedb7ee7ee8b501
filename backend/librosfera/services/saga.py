# Overview: Explicit compensation log for multi-step operations.

from __future__ import annotations

from flask import current_app


class Saga:
    """
    Records one compensating action per completed step.

    On failure the caller invokes compensate(), which runs the actions in
    reverse order. A compensation that fails is logged and the remaining ones
    still run; the failures are returned so the caller can report them.
    """

    def __init__(self, name: str):
        self.name = name
        self._steps: list[tuple[str, object]] = []

    def __len__(self) -> int:
        return len(self._steps)

    def add_compensation(self, description: str, action) -> None:
        self._steps.append((description, action))

    def compensate(self) -> list[str]:
        failures = []
        for description, action in reversed(self._steps):
            try:
                action()
                current_app.logger.info("Saga %s compensated: %s", self.name, description)
            except Exception:
                current_app.logger.exception("Saga %s compensation failed: %s", self.name, description)
                failures.append(description)
        self._steps.clear()
        return failures
