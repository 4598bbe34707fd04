"""Graph Validator — structural checks before a graph is ever executed.

Checks run in four passes: schema, edges, topology (cycles, isolated nodes,
start/end nodes, depth) and settings. ``validate`` never raises; every
finding comes back as a ValidationIssue in the result.

Both traversals (cycle detection and longest chain) are iterative with an
explicit stack, so graph size is bounded by memory rather than recursion
depth.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping

from execflow.models.graph import GraphDefinition
from execflow.models.validation import ValidationIssue, ValidationResult, ValidationStats

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("id", "name", "version", "nodes", "edges")

SEMVER_PATTERN = re.compile(r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")

DEFAULT_HIGH_CONCURRENCY = 100
DEFAULT_LOW_TIMEOUT_MS = 1000
DEFAULT_HIGH_RETRY_COUNT = 10


class GraphValidator:
    """Validates task-graph definitions.

    Usage:
        validator = GraphValidator(known_node_types={"http", "transform"})
        result = validator.validate(graph)
        if not result.valid:
            for issue in result.errors:
                print(issue.code, issue.message)

    Accepts either a GraphDefinition or a raw mapping, so documents can be
    checked before they are parsed into models.
    """

    def __init__(
        self,
        known_node_types: Iterable[str] | None = None,
        high_concurrency: int = DEFAULT_HIGH_CONCURRENCY,
        low_timeout_ms: int = DEFAULT_LOW_TIMEOUT_MS,
        high_retry_count: int = DEFAULT_HIGH_RETRY_COUNT,
    ) -> None:
        self.known_node_types = set(known_node_types) if known_node_types else None
        self.high_concurrency = high_concurrency
        self.low_timeout_ms = low_timeout_ms
        self.high_retry_count = high_retry_count

    def validate(self, graph: GraphDefinition | Mapping) -> ValidationResult:
        """Validate a graph definition. Never raises."""
        try:
            return self._validate(graph)
        except Exception as e:
            logger.exception("Graph validation aborted unexpectedly")
            return ValidationResult(
                valid=False,
                errors=[ValidationIssue(code="VALIDATION_FAILED", message=f"Validation aborted: {e}")],
            )

    def _validate(self, graph: GraphDefinition | Mapping) -> ValidationResult:
        if isinstance(graph, GraphDefinition):
            doc: Mapping = graph.to_document()
        elif isinstance(graph, Mapping):
            doc = graph
        else:
            return ValidationResult(
                valid=False,
                errors=[ValidationIssue(
                    code="INVALID_SCHEMA",
                    message=f"Graph must be an object, got {type(graph).__name__}",
                )],
            )

        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        nodes, edges = self._check_schema(doc, errors, warnings)
        node_ids = _unique_ids(nodes)
        adjacency, connected = self._check_edges(edges, node_ids, errors, warnings)
        stats = self._check_topology(node_ids, adjacency, connected, len(edges), errors, warnings)
        self._check_settings(doc.get("settings"), errors, warnings)

        stats.total_nodes = len(nodes)
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings, stats=stats)

    # ---- Schema ----

    def _check_schema(
        self,
        doc: Mapping,
        errors: list[ValidationIssue],
        warnings: list[ValidationIssue],
    ) -> tuple[list[Mapping], list[Mapping]]:
        for field in REQUIRED_FIELDS:
            if doc.get(field) in (None, ""):
                errors.append(ValidationIssue(
                    code="MISSING_FIELD",
                    message=f"Required field '{field}' is missing",
                    field=field,
                ))

        version = doc.get("version")
        if isinstance(version, str) and version and not SEMVER_PATTERN.match(version):
            warnings.append(ValidationIssue(
                code="INVALID_VERSION_FORMAT",
                message=f"Version '{version}' is not in semantic version format (x.y.z)",
                severity="warning",
                field="version",
            ))

        nodes = _as_entries(doc.get("nodes"), "nodes", errors)
        edges = _as_entries(doc.get("edges"), "edges", errors)

        seen_nodes: set[str] = set()
        for index, node in enumerate(nodes):
            node_id = node.get("id")
            if not node_id or not isinstance(node_id, str):
                errors.append(ValidationIssue(
                    code="MISSING_FIELD",
                    message=f"Node at index {index} has no id",
                    field=f"nodes[{index}].id",
                ))
                continue
            if node_id in seen_nodes:
                errors.append(ValidationIssue(
                    code="DUPLICATE_NODE_ID",
                    message=f"Duplicate node id '{node_id}'",
                    node_id=node_id,
                ))
            seen_nodes.add(node_id)

            node_type = node.get("type")
            if not node_type:
                errors.append(ValidationIssue(
                    code="MISSING_FIELD",
                    message=f"Node '{node_id}' has no type",
                    node_id=node_id,
                    field="type",
                ))
            elif self.known_node_types is not None and node_type not in self.known_node_types:
                errors.append(ValidationIssue(
                    code="UNKNOWN_NODE_TYPE",
                    message=f"Node '{node_id}' has unknown type '{node_type}'",
                    node_id=node_id,
                    field="type",
                ))

            inputs = node.get("inputs") or {}
            if isinstance(inputs, Mapping):
                for input_name, mapping in inputs.items():
                    if not isinstance(mapping, Mapping) or not mapping.get("from") or not mapping.get("output"):
                        warnings.append(ValidationIssue(
                            code="INCOMPLETE_INPUT_MAPPING",
                            message=f"Input '{input_name}' of node '{node_id}' needs both 'from' and 'output'",
                            severity="warning",
                            node_id=node_id,
                            field=f"inputs.{input_name}",
                        ))

        seen_edges: set[str] = set()
        for index, edge in enumerate(edges):
            edge_id = edge.get("id")
            if not edge_id:
                errors.append(ValidationIssue(
                    code="MISSING_FIELD",
                    message=f"Edge at index {index} has no id",
                    field=f"edges[{index}].id",
                ))
                continue
            if edge_id in seen_edges:
                errors.append(ValidationIssue(
                    code="DUPLICATE_EDGE_ID",
                    message=f"Duplicate edge id '{edge_id}'",
                    edge_id=edge_id,
                ))
            seen_edges.add(edge_id)

        return nodes, edges

    # ---- Edges ----

    def _check_edges(
        self,
        edges: list[Mapping],
        node_ids: list[str],
        errors: list[ValidationIssue],
        warnings: list[ValidationIssue],
    ) -> tuple[dict[str, list[str]], set[str]]:
        """Check edge endpoints; build the adjacency used by topology checks.

        Returns the successor lists of the enabled, well-formed edges and the
        set of node ids touched by any such edge.
        """
        known = set(node_ids)
        adjacency: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
        connected: set[str] = set()
        connections: set[tuple] = set()

        for edge in edges:
            edge_id = edge.get("id") or None
            source = edge.get("source")
            target = edge.get("target")

            if not source or not target:
                errors.append(ValidationIssue(
                    code="MISSING_FIELD",
                    message=f"Edge '{edge_id}' must declare both source and target",
                    edge_id=edge_id,
                    field="source" if not source else "target",
                ))
                continue

            endpoints_ok = True
            if source not in known:
                errors.append(ValidationIssue(
                    code="INVALID_SOURCE_NODE",
                    message=f"Edge '{edge_id}' references unknown source node '{source}'",
                    edge_id=edge_id,
                    node_id=source,
                ))
                endpoints_ok = False
            if target not in known:
                errors.append(ValidationIssue(
                    code="INVALID_TARGET_NODE",
                    message=f"Edge '{edge_id}' references unknown target node '{target}'",
                    edge_id=edge_id,
                    node_id=target,
                ))
                endpoints_ok = False
            if source == target:
                errors.append(ValidationIssue(
                    code="SELF_LOOP",
                    message=f"Edge '{edge_id}' connects node '{source}' to itself",
                    edge_id=edge_id,
                    node_id=source,
                ))
                endpoints_ok = False

            source_output = edge.get("source_output")
            target_input = edge.get("target_input")
            if not source_output:
                warnings.append(ValidationIssue(
                    code="MISSING_SOURCE_OUTPUT",
                    message=f"Edge '{edge_id}' does not name a source output",
                    severity="warning",
                    edge_id=edge_id,
                ))
            if not target_input:
                warnings.append(ValidationIssue(
                    code="MISSING_TARGET_INPUT",
                    message=f"Edge '{edge_id}' does not name a target input",
                    severity="warning",
                    edge_id=edge_id,
                ))

            connection = (source, source_output, target, target_input)
            if connection in connections:
                warnings.append(ValidationIssue(
                    code="DUPLICATE_CONNECTION",
                    message=f"Edge '{edge_id}' duplicates an existing connection {source} -> {target}",
                    severity="warning",
                    edge_id=edge_id,
                ))
            connections.add(connection)

            if not endpoints_ok or edge.get("enabled") is False:
                continue
            if target not in adjacency[source]:
                adjacency[source].append(target)
            connected.update((source, target))

        return adjacency, connected

    # ---- Topology ----

    def _check_topology(
        self,
        node_ids: list[str],
        adjacency: dict[str, list[str]],
        connected: set[str],
        edge_count: int,
        errors: list[ValidationIssue],
        warnings: list[ValidationIssue],
    ) -> ValidationStats:
        stats = ValidationStats(total_nodes=len(node_ids), total_edges=edge_count)
        if not node_ids:
            warnings.append(ValidationIssue(
                code="EMPTY_WORKFLOW",
                message="Graph has no nodes",
                severity="warning",
            ))
            return stats

        cycles = find_cycles(node_ids, adjacency)
        for cycle in cycles:
            path = " -> ".join([*cycle, cycle[0]])
            errors.append(ValidationIssue(
                code="CIRCULAR_DEPENDENCY",
                message=f"Circular dependency detected: {path}",
                node_id=cycle[0],
                details={"cycle": cycle},
            ))

        has_incoming = {target for targets in adjacency.values() for target in targets}
        start_nodes = [n for n in node_ids if n not in has_incoming]
        end_nodes = [n for n in node_ids if not adjacency[n]]

        for node_id in node_ids:
            if node_id not in connected and len(node_ids) > 1:
                warnings.append(ValidationIssue(
                    code="ISOLATED_NODE",
                    message=f"Node '{node_id}' has no incoming or outgoing connections",
                    severity="warning",
                    node_id=node_id,
                ))

        if not start_nodes:
            warnings.append(ValidationIssue(
                code="NO_START_NODE",
                message="Every node has an incoming edge; there is no node to start from",
                severity="warning",
            ))
        if not end_nodes:
            warnings.append(ValidationIssue(
                code="NO_END_NODE",
                message="Every node has an outgoing edge; there is no node to finish on",
                severity="warning",
            ))

        stats.start_nodes = len(start_nodes)
        stats.end_nodes = len(end_nodes)
        stats.max_depth = 0 if cycles else longest_chain(node_ids, adjacency)
        return stats

    # ---- Settings ----

    def _check_settings(
        self,
        settings: Mapping | None,
        errors: list[ValidationIssue],
        warnings: list[ValidationIssue],
    ) -> None:
        if not settings:
            return
        if not isinstance(settings, Mapping):
            errors.append(ValidationIssue(
                code="INVALID_SCHEMA",
                message="'settings' must be an object",
                field="settings",
            ))
            return

        concurrency = settings.get("max_concurrency")
        if isinstance(concurrency, (int, float)):
            if concurrency < 1:
                errors.append(ValidationIssue(
                    code="INVALID_SETTING",
                    message="max_concurrency must be at least 1",
                    field="settings.max_concurrency",
                ))
            elif concurrency > self.high_concurrency:
                warnings.append(ValidationIssue(
                    code="HIGH_CONCURRENCY",
                    message=f"max_concurrency {concurrency} is above {self.high_concurrency}",
                    severity="warning",
                    field="settings.max_concurrency",
                ))

        timeout = settings.get("timeout")
        if isinstance(timeout, (int, float)) and timeout < self.low_timeout_ms:
            warnings.append(ValidationIssue(
                code="LOW_TIMEOUT",
                message=f"timeout {timeout}ms is below {self.low_timeout_ms}ms",
                severity="warning",
                field="settings.timeout",
            ))

        policy = settings.get("retry_policy")
        retries = policy.get("max_retries") if isinstance(policy, Mapping) else None
        if isinstance(retries, (int, float)):
            if retries < 0:
                errors.append(ValidationIssue(
                    code="INVALID_SETTING",
                    message="max_retries cannot be negative",
                    field="settings.retry_policy.max_retries",
                ))
            elif retries > self.high_retry_count:
                warnings.append(ValidationIssue(
                    code="HIGH_RETRY_COUNT",
                    message=f"max_retries {retries} is above {self.high_retry_count}",
                    severity="warning",
                    field="settings.retry_policy.max_retries",
                ))


# === Graph algorithms ===


def find_cycles(node_ids: list[str], adjacency: dict[str, list[str]]) -> list[list[str]]:
    """Find directed cycles with an iterative depth-first search.

    A back edge to a node on the current path closes a cycle. Each cycle is
    returned once, as the path from the node the back edge points to; two
    reports of the same cycle entered at different nodes are collapsed by
    comparing their rotation starting at the smallest node id.
    """
    visited: set[str] = set()
    seen: set[tuple[str, ...]] = set()
    cycles: list[list[str]] = []

    for root in node_ids:
        if root in visited:
            continue
        visited.add(root)
        path = [root]
        on_path = {root}
        stack = [(root, iter(adjacency.get(root, ())))]

        while stack:
            node, successors = stack[-1]
            descended = False
            for child in successors:
                if child in on_path:
                    cycle = path[path.index(child):]
                    key = _canonical_rotation(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(cycle)
                elif child not in visited:
                    visited.add(child)
                    path.append(child)
                    on_path.add(child)
                    stack.append((child, iter(adjacency.get(child, ()))))
                    descended = True
                    break
            if not descended:
                stack.pop()
                path.pop()
                on_path.discard(node)

    return cycles


def longest_chain(node_ids: list[str], adjacency: dict[str, list[str]]) -> int:
    """Node count of the longest path in a DAG (A -> B -> C is 3).

    Memoized post-order walk; callers must rule out cycles first.
    """
    depth: dict[str, int] = {}
    for root in node_ids:
        if root in depth:
            continue
        stack = [(root, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded:
                depth[node] = 1 + max((depth[c] for c in adjacency.get(node, ())), default=0)
                continue
            if node in depth:
                continue
            stack.append((node, True))
            for child in adjacency.get(node, ()):
                if child not in depth:
                    stack.append((child, False))
    return max(depth.values(), default=0)


def _canonical_rotation(cycle: list[str]) -> tuple[str, ...]:
    start = cycle.index(min(cycle))
    return tuple(cycle[start:] + cycle[:start])


def _as_entries(value, field: str, errors: list[ValidationIssue]) -> list[Mapping]:
    if value is None:
        return []
    if not isinstance(value, list):
        errors.append(ValidationIssue(
            code="INVALID_SCHEMA",
            message=f"'{field}' must be an array",
            field=field,
        ))
        return []
    entries = []
    for index, item in enumerate(value):
        if isinstance(item, Mapping):
            entries.append(item)
        else:
            errors.append(ValidationIssue(
                code="INVALID_SCHEMA",
                message=f"{field}[{index}] must be an object",
                field=f"{field}[{index}]",
            ))
    return entries


def _unique_ids(entries: list[Mapping]) -> list[str]:
    ids: dict[str, None] = {}
    for entry in entries:
        entry_id = entry.get("id")
        if entry_id and isinstance(entry_id, str):
            ids.setdefault(entry_id)
    return list(ids)
