"""Built-in workflow templates.

Templates are bundled as YAML files in the package's ``templates``
directory and loaded once when the catalog is created. Instantiating a
template binds it to a framework and yields a raw definition mapping that
goes through the registry's normal validation.
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml

from aumos_compliance_orchestrator.errors import NotFoundError
from aumos_compliance_orchestrator.observability import get_logger

logger = get_logger(__name__)

# Path to the bundled YAML template directory
_TEMPLATE_DIR = Path(__file__).parent.parent / "templates"


class WorkflowTemplateCatalog:
    """Cache of workflow templates keyed by template id.

    Args:
        template_dir: Directory containing ``*.yaml`` template files.
    """

    def __init__(self, template_dir: Path = _TEMPLATE_DIR) -> None:
        self._templates: dict[str, dict[str, Any]] = {}
        self._load_templates(template_dir)

    def _load_templates(self, template_dir: Path) -> None:
        if not template_dir.exists():
            logger.warning("Template directory not found, no templates loaded", template_dir=str(template_dir))
            return

        for yaml_file in sorted(template_dir.glob("*.yaml")):
            raw = yaml.safe_load(yaml_file.read_text(encoding="utf-8"))
            template_id = raw.pop("template_id", yaml_file.stem)
            self._templates[template_id] = raw
            logger.debug("Loaded workflow template", template_id=template_id, step_count=len(raw.get("steps", [])))

        logger.info("Workflow templates loaded", template_ids=sorted(self._templates))

    def list_templates(self) -> list[dict[str, Any]]:
        """Return summary metadata for every template."""
        return [
            {
                "template_id": template_id,
                "name": raw["name"],
                "category": raw["category"],
                "step_count": len(raw.get("steps", [])),
            }
            for template_id, raw in sorted(self._templates.items())
        ]

    def instantiate(self, template_id: str, framework_id: str, **overrides: Any) -> dict[str, Any]:
        """Bind a template to a framework.

        Args:
            template_id: Template to use, e.g. ``continuous_monitoring``.
            framework_id: Framework the workflow operates on.
            **overrides: Top-level definition fields to replace.

        Returns:
            A raw definition mapping ready for ``WorkflowRegistry.register``.

        Raises:
            NotFoundError: If the template does not exist.
        """
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(
                message=f"No workflow template '{template_id}'. Available templates: {sorted(self._templates)}",
            )
        definition = copy.deepcopy(template)
        definition.update(
            definition_id=f"{template_id}-{framework_id}",
            name=f"{template['name']} ({framework_id})",
            framework_id=framework_id,
        )
        definition.update(overrides)
        return definition
