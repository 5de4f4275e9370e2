"""Display metadata for medications. Presentation only; never affects scheduling."""

from __future__ import annotations

from typing import Any, Protocol

from .models import MedicationCommand


class DrugMetadataService(Protocol):
    def describe(self, command: MedicationCommand) -> dict[str, Any]: ...


class CommandDrugMetadata:
    """Default: derive the display name from the command itself."""

    def describe(self, command: MedicationCommand) -> dict[str, Any]:
        return {
            "display_name": f"{command.medication_name} {command.dosage}".strip(),
            "medication_name": command.medication_name,
            "dosage": command.dosage,
            "instructions": command.instructions,
        }
