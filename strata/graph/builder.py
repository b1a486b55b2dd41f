"""
Graph Builder - Declared resource blocks to a validated DAG.

Edges come from ``${kind.name.attr}`` references and explicit
``depends_on`` entries.
"""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from strata.core.exceptions import CycleError, ParseError, UnresolvedReferenceError
from strata.declaration.expressions import is_literal
from strata.declaration.parser import Declaration, OutputDecl, ResourceBlock
from strata.graph.model import DependencyGraph, ResourceNode, topological_sort
from strata.schema.registry import SchemaRegistry


class GraphBuilder:
    """Builds and validates the dependency graph."""

    def __init__(self, registry: SchemaRegistry) -> None:
        self.registry = registry

    def build(self, blocks: Iterable[ResourceBlock]) -> DependencyGraph:
        """
        Build a DAG from resource blocks.

        Raises:
            ParseError: Unknown kind or schema violation
            UnresolvedReferenceError: Reference to a missing node or attribute
            CycleError: Reference cycle
        """
        graph = DependencyGraph()

        for block in blocks:
            if block.address in graph.nodes:
                raise ParseError(f"{block.address} declared more than once", source=block.source)
            schema = self.registry.get(block.kind)
            attributes = schema.with_defaults(block.attributes)
            try:
                schema.validate(block.address, attributes, is_literal=is_literal)
            except ParseError as e:
                raise ParseError(e.message, source=block.source, details=e.details) from e
            graph.nodes[block.address] = ResourceNode(
                kind=block.kind,
                name=block.name,
                attributes=attributes,
                depends_on=list(block.depends_on),
                source=block.source,
            )

        for address, node in graph.nodes.items():
            deps: set[str] = set()
            for ref in node.references:
                if ref.is_variable:
                    raise UnresolvedReferenceError(address, str(ref), "variable was not substituted")
                self._check_target(address, ref.address, ref.attribute, graph, str(ref))
                deps.add(ref.address)
            for dep in node.depends_on:
                if dep not in graph.nodes:
                    raise UnresolvedReferenceError(address, dep, "depends_on target is not declared")
                deps.add(dep)
            if address in deps:
                raise CycleError([address, address])
            graph.edges[address] = deps

        graph.order = topological_sort(graph.nodes, graph.edges)
        logger.debug(f"Built graph: {len(graph.nodes)} nodes, {len(graph.edge_list())} edges")
        return graph

    def build_declaration(self, declaration: Declaration) -> DependencyGraph:
        """Build the graph and validate outputs of a declaration."""
        graph = self.build(declaration.resources.values())
        self.validate_outputs(declaration.outputs.values(), graph)
        return graph

    def validate_outputs(self, outputs: Iterable[OutputDecl], graph: DependencyGraph) -> None:
        """
        Check output references.

        Raises:
            UnresolvedReferenceError: If an output references a missing node or attribute
        """
        for output in outputs:
            where = f"output.{output.name}"
            for ref in output.references:
                if ref.is_variable:
                    raise UnresolvedReferenceError(where, str(ref), "variable was not substituted")
                self._check_target(where, ref.address, ref.attribute, graph, str(ref))

    def _check_target(
        self,
        where: str,
        target: str,
        attribute: str | None,
        graph: DependencyGraph,
        text: str,
    ) -> None:
        node = graph.nodes.get(target)
        if node is None:
            raise UnresolvedReferenceError(where, text, f"resource {target} is not declared")
        schema = self.registry.get(node.kind)
        if attribute is not None and not schema.exposes(attribute):
            raise UnresolvedReferenceError(
                where, text, f"kind '{node.kind}' has no attribute or output '{attribute}'"
            )
