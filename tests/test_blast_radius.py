"""Tests for blast radius traversal, scoring, risk classification and caching."""

import pytest

from graphrollup.rollup.blast_radius import BlastRadiusEngine, classify_risk
from graphrollup.rollup.errors import RollupBlastRadiusError
from graphrollup.rollup.graph import RollupGraph
from graphrollup.rollup.merge_engine import MergeEngine
from graphrollup.rollup.types import BlastRadiusQuery, MergeOptions, RiskLevel
from tests.helpers import edge, infra_graphs, match, node

EXECUTION = "exec-1"
REPO_NAMES = {"repo-infra": "Infrastructure", "repo-app": "Application"}


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def infra_rollup_graph():
    graphs = infra_graphs()
    nodes = {n.id: n for g in graphs for n in g.nodes}
    result = MergeEngine(max_workers=1).merge(
        list(nodes.values()),
        {g.repository_id: g.edges for g in graphs},
        [match(nodes["logs"], nodes["logs-ref"])],
        MergeOptions(),
    )
    return RollupGraph(
        execution_id=EXECUTION,
        merged_nodes=result.merged_nodes,
        passthrough_nodes=result.passthrough_nodes,
        edges=result.edges,
    )


@pytest.fixture
def graph():
    return infra_rollup_graph()


@pytest.fixture
def engine(graph):
    engine = BlastRadiusEngine()
    engine.register_graph(graph, REPO_NAMES)
    return engine


def query(*node_ids, **options):
    return BlastRadiusQuery(node_ids=list(node_ids), **options)


@pytest.mark.parametrize(
    "total,cross,expected",
    [
        (150, 4, RiskLevel.CRITICAL),
        (101, 4, RiskLevel.CRITICAL),
        (150, 3, RiskLevel.HIGH),
        (60, 0, RiskLevel.HIGH),
        (0, 3, RiskLevel.HIGH),
        (50, 2, RiskLevel.MEDIUM),
        (11, 0, RiskLevel.MEDIUM),
        (5, 1, RiskLevel.MEDIUM),
        (10, 0, RiskLevel.LOW),
        (0, 0, RiskLevel.LOW),
    ],
)
def test_classify_risk(total, cross, expected):
    assert classify_risk(total, cross) == expected


def test_change_in_infra_reaches_app_through_shared_bucket(engine, graph):
    merged_id = graph.merged_nodes[0].id

    result = engine.analyze(EXECUTION, query("vpc"))

    assert [n.node_id for n in result.direct_impact] == [merged_id]
    direct = result.direct_impact[0]
    assert direct.depth == 1
    assert direct.repo_id == "repo-app"
    assert direct.repo_name == "Application"
    assert direct.path is None

    assert [n.node_id for n in result.indirect_impact] == ["repo-app:archiver"]
    assert result.indirect_impact[0].path == ["repo-infra:vpc", merged_id, "repo-app:archiver"]

    assert [c.to_dict() for c in result.cross_repo_impact] == [
        {
            "sourceRepoId": "repo-infra",
            "sourceRepoName": "Infrastructure",
            "targetRepoId": "repo-app",
            "targetRepoName": "Application",
            "edgeType": "depends_on",
            "impactedNodes": 1,
        },
        {
            "sourceRepoId": "repo-infra",
            "sourceRepoName": "Infrastructure",
            "targetRepoId": "repo-app",
            "targetRepoName": "Application",
            "edgeType": "triggers",
            "impactedNodes": 1,
        },
    ]

    summary = result.summary
    assert summary.total_impacted == 2
    assert summary.direct_count == 1
    assert summary.indirect_count == 1
    assert summary.cross_repo_count == 2
    assert summary.risk_level == RiskLevel.MEDIUM
    assert summary.impact_score == 1.19
    assert summary.impact_by_depth == {"1": 1, "2": 1}
    assert summary.impact_by_repo == {"repo-app": 2}
    assert summary.impact_by_type == {"terraform_resource": 2}
    assert result.cached is False


def test_source_node_ids_resolve_to_their_merged_node(engine):
    result = engine.analyze(EXECUTION, query("logs"))

    assert [n.node_id for n in result.direct_impact] == ["repo-app:archiver"]
    # leaving the shared bucket for an app-only node crosses out of repo-infra
    assert [(c.source_repo_id, c.target_repo_id) for c in result.cross_repo_impact] == [
        ("repo-infra", "repo-app")
    ]
    assert result.summary.risk_level == RiskLevel.MEDIUM
    assert result.summary.impact_score == 0.7


def test_entering_a_merged_node_from_the_app_side(engine):
    result = engine.analyze(EXECUTION, query("repo-app:api"))

    assert [(c.source_repo_id, c.target_repo_id, c.edge_type) for c in result.cross_repo_impact] == [
        ("repo-app", "repo-infra", "writes_to"),
        ("repo-infra", "repo-app", "triggers"),
    ]
    assert result.summary.total_impacted == 2


def test_max_depth_zero_is_empty(engine):
    result = engine.analyze(EXECUTION, query("vpc", max_depth=0))

    assert result.direct_impact == []
    assert result.indirect_impact == []
    assert result.summary.total_impacted == 0
    assert result.summary.risk_level == RiskLevel.LOW
    assert result.summary.impact_score == 0


def test_max_depth_limits_traversal(engine):
    result = engine.analyze(EXECUTION, query("vpc", max_depth=1))

    assert result.summary.direct_count == 1
    assert result.summary.indirect_count == 0


def test_exclude_indirect(engine):
    result = engine.analyze(EXECUTION, query("vpc", include_indirect=False))

    assert result.indirect_impact == []
    assert result.summary.total_impacted == 1


def test_exclude_cross_repo_stops_at_repository_boundary(engine):
    result = engine.analyze(EXECUTION, query("vpc", include_cross_repo=False))

    assert result.summary.total_impacted == 0
    assert result.cross_repo_impact == []


def test_edge_type_filter(engine):
    blocked = engine.analyze(EXECUTION, query("vpc", edge_types=["triggers"]))
    allowed = engine.analyze(EXECUTION, query("logs", edge_types=["triggers"]))

    assert blocked.summary.total_impacted == 0
    assert [n.node_id for n in allowed.direct_impact] == ["repo-app:archiver"]


def test_seeds_are_not_reported_as_impacted(engine, graph):
    merged_id = graph.merged_nodes[0].id

    result = engine.analyze(EXECUTION, query("vpc", merged_id))

    assert [n.node_id for n in result.direct_impact] == ["repo-app:archiver"]
    assert result.indirect_impact == []


def test_unknown_seed_is_rejected(engine):
    with pytest.raises(RollupBlastRadiusError) as exc_info:
        engine.analyze(EXECUTION, query("vpc", "nope"))

    assert exc_info.value.details == {"missingNodeIds": ["nope"]}


def test_ambiguous_source_id_must_be_qualified():
    engine = BlastRadiusEngine()
    engine.register_graph(
        RollupGraph(
            execution_id=EXECUTION,
            passthrough_nodes=[node("repo-1", "x"), node("repo-2", "x"), node("repo-2", "y")],
            edges=[edge("e1", "repo-1:x", "repo-2:y")],
        )
    )

    with pytest.raises(RollupBlastRadiusError):
        engine.analyze(EXECUTION, query("x"))
    result = engine.analyze(EXECUTION, query("repo-1:x"))

    assert [n.node_id for n in result.direct_impact] == ["repo-2:y"]
    assert result.summary.cross_repo_count == 1


def test_unregistered_execution_is_rejected():
    with pytest.raises(RollupBlastRadiusError):
        BlastRadiusEngine().analyze("missing", query("vpc"))


def test_results_are_cached_per_query(graph):
    clock = FakeClock()
    engine = BlastRadiusEngine(cache_ttl_seconds=60, clock=clock)
    engine.register_graph(graph, REPO_NAMES)

    first = engine.analyze(EXECUTION, query("vpc"))
    second = engine.analyze(EXECUTION, query("vpc"))
    other = engine.analyze(EXECUTION, query("vpc", max_depth=1))

    assert first.cached is False
    assert second.cached is True
    assert other.cached is False
    assert second.summary.to_dict() == first.summary.to_dict()

    clock.now += 61
    assert engine.analyze(EXECUTION, query("vpc")).cached is False


def test_seed_order_does_not_split_the_cache(engine):
    engine.analyze(EXECUTION, query("vpc", "logs"))

    assert engine.analyze(EXECUTION, query("logs", "vpc")).cached is True


def test_registering_a_graph_invalidates_its_cache(engine, graph):
    engine.analyze(EXECUTION, query("vpc"))
    engine.register_graph(graph, REPO_NAMES)

    assert engine.analyze(EXECUTION, query("vpc")).cached is False


def test_cache_evicts_oldest_entry(graph):
    clock = FakeClock()
    engine = BlastRadiusEngine(max_cache_entries=1, clock=clock)
    engine.register_graph(graph)

    engine.analyze(EXECUTION, query("vpc"))
    clock.now += 1
    engine.analyze(EXECUTION, query("logs"))

    assert engine.analyze(EXECUTION, query("logs")).cached is True
    assert engine.analyze(EXECUTION, query("vpc")).cached is False


def test_result_serialization(engine):
    data = engine.analyze(EXECUTION, query("vpc")).to_dict()

    assert data["executionId"] == EXECUTION
    assert data["query"]["nodeIds"] == ["vpc"]
    assert data["summary"]["riskLevel"] == "medium"
    assert data["indirectImpact"][0]["path"][0] == "repo-infra:vpc"
    assert "path" not in data["directImpact"][0]


def test_cross_repo_flag_matches_merge_engine(graph):
    engine = BlastRadiusEngine()
    engine.register_graph(graph, REPO_NAMES)
    flagged = sum(1 for e in graph.edges if e.metadata["isCrossRepoEdge"])

    result = engine.analyze(EXECUTION, query("vpc", "repo-app:api"))

    assert flagged == 3
    assert result.summary.cross_repo_count == 2
    assert engine.analyze(EXECUTION, query("logs", include_cross_repo=False)).direct_impact == []


def test_edges_without_cross_repo_flag_compare_repository_sets():
    engine = BlastRadiusEngine()
    engine.register_graph(
        RollupGraph(
            execution_id=EXECUTION,
            passthrough_nodes=[node("repo-1", "a"), node("repo-1", "b")],
            edges=[edge("e1", "repo-1:a", "repo-1:b")],
        )
    )

    result = engine.analyze(EXECUTION, query("a", include_cross_repo=False))

    assert [n.node_id for n in result.direct_impact] == ["repo-1:b"]
    assert result.cross_repo_impact == []
