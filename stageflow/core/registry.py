"""Registry of pipeline definitions discovered on disk."""

from __future__ import annotations

from pathlib import Path

from stageflow.core.definition import DEFINITION_SUFFIXES, PipelineDefinition, load_definition
from stageflow.core.graph import StageGraph, build_graph
from stageflow.utils.exceptions import DefinitionNotFoundError, PipelineDefinitionError
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)


class DefinitionRegistry:
    """Holds validated pipeline definitions keyed by pipeline name.

    Typical lifecycle::

        registry = DefinitionRegistry()
        registry.discover("./pipelines")
        graph = registry.graph("service")
    """

    def __init__(self, default_timeout: float | None = None) -> None:
        self.default_timeout = default_timeout
        self._definitions: dict[str, PipelineDefinition] = {}
        self._graphs: dict[str, StageGraph] = {}

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover(self, directory: str | Path) -> int:
        """Load every ``*.yaml``, ``*.yml`` and ``*.json`` file in *directory*.

        Invalid definitions are logged and skipped so one broken file does
        not hide the others.  Returns the number of newly registered
        pipelines.
        """
        directory = Path(directory)

        if not directory.is_dir():
            logger.warning("definitions_directory_missing", path=str(directory))
            return 0

        count = 0
        for filepath in sorted(directory.iterdir()):
            if filepath.suffix not in DEFINITION_SUFFIXES or not filepath.is_file():
                continue
            try:
                self.register(load_definition(filepath))
            except PipelineDefinitionError as exc:
                logger.error(
                    "definition_invalid",
                    path=str(filepath),
                    problems=exc.problems,
                )
                continue
            count += 1

        logger.info("definitions_discovered", path=str(directory), count=count)
        return count

    # ------------------------------------------------------------------
    # Registration & lookup
    # ------------------------------------------------------------------

    def register(self, definition: PipelineDefinition) -> StageGraph:
        """Validate *definition*, build its graph and store both.

        A definition with the same name is replaced.  Raises
        :class:`PipelineDefinitionError` when the graph cannot be built.
        """
        graph = build_graph(definition, self.default_timeout)
        name = definition.name
        if name in self._definitions:
            logger.warning("definition_overwritten", pipeline=name)
        self._definitions[name] = definition
        self._graphs[name] = graph
        logger.debug("definition_registered", pipeline=name)
        return graph

    def get(self, name: str) -> PipelineDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            raise DefinitionNotFoundError(name)
        return definition

    def graph(self, name: str) -> StageGraph:
        """Return the stage graph for pipeline *name*.

        Raises :class:`DefinitionNotFoundError` if no such pipeline exists.
        """
        graph = self._graphs.get(name)
        if graph is None:
            raise DefinitionNotFoundError(name)
        return graph

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def list_all(self) -> list[PipelineDefinition]:
        return list(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, name: str) -> bool:
        return name in self._definitions
