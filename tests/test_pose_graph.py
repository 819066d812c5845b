import io

import numpy as np
import pytest

from slamkit.lie import SE3
from slamkit.pose_graph import (
    EDGE_TAG,
    VERTEX_TAG,
    Edge,
    PoseGraph,
    jr_inv,
    main,
    read_pose_graph,
)

PAIRS = [(0, 1), (1, 2), (2, 3), (3, 0), (0, 2)]


def _true_poses():
    twists = [
        np.zeros(6),
        [1.0, 0.0, 0.0, 0.0, 0.0, 0.3],
        [1.5, 1.0, 0.0, 0.1, 0.0, 0.8],
        [0.2, 1.2, 0.1, 0.0, 0.2, 1.5],
    ]
    return [SE3.exp(t) for t in twists]


def _graph(poses, perturb=False):
    graph = PoseGraph()
    for k, pose in enumerate(poses):
        if perturb and k:
            pose = SE3.exp([0.05 * k, -0.03, 0.02, 0.01, -0.02, 0.03]) * pose
        graph.add_vertex(k, pose, fixed=(k == 0))
    for i, j in PAIRS:
        graph.add_edge(i, j, poses[i].inverse() * poses[j])
    return graph


def test_jr_inv_is_identity():
    assert np.allclose(jr_inv(SE3.exp([0.1, 0.2, 0.3, 0.1, -0.1, 0.2])), np.eye(6))


def test_jr_inv_rejects_non_transform():
    with pytest.raises(TypeError):
        jr_inv(np.zeros(6))


def test_consistent_graph_has_zero_error():
    graph = _graph(_true_poses())
    assert graph.total_error() < 1e-20


def test_edge_jacobian_matches_finite_difference_at_zero_error():
    poses = _true_poses()
    edge = Edge(1, 2, poses[1].inverse() * poses[2])
    _, Jj = edge.jacobians(poses[1], poses[2])
    delta = np.array([0.3, -0.2, 0.1, 0.2, 0.1, -0.4])
    eps = 1e-6
    moved = SE3.exp(eps * delta) * poses[2]
    numeric = edge.error(poses[1], moved) / eps
    assert np.allclose(numeric, Jj @ delta, atol=1e-5)


def test_edge_jacobians_are_opposite():
    poses = _true_poses()
    edge = Edge(0, 3, SE3.exp([0.1, 0, 0, 0, 0, 0.1]))
    Ji, Jj = edge.jacobians(poses[0], poses[3])
    assert np.allclose(Ji, -Jj)


def test_optimize_recovers_true_poses():
    poses = _true_poses()
    graph = _graph(poses, perturb=True)
    assert graph.total_error() > 1e-4
    final = graph.optimize(50)
    assert final < 1e-10
    assert final == pytest.approx(graph.total_error())
    for k, pose in enumerate(poses):
        assert np.allclose(graph.vertices[k].matrix(), pose.matrix(), atol=1e-5)


def test_optimize_keeps_fixed_vertex():
    poses = _true_poses()
    graph = _graph(poses, perturb=True)
    before = graph.vertices[0].matrix()
    graph.optimize(10)
    assert np.array_equal(graph.vertices[0].matrix(), before)


def test_optimize_without_free_vertices_changes_nothing():
    graph = PoseGraph()
    graph.add_vertex(0, SE3(), fixed=True)
    graph.add_vertex(1, SE3(None, (1.0, 0.0, 0.0)), fixed=True)
    graph.add_edge(0, 1, SE3(None, (2.0, 0.0, 0.0)))
    before = graph.total_error()
    assert graph.optimize(10) == pytest.approx(before)
    assert np.allclose(graph.vertices[1].translation, [1.0, 0.0, 0.0])


def test_add_edge_unknown_vertex_raises():
    graph = PoseGraph()
    graph.add_vertex(0)
    with pytest.raises(KeyError):
        graph.add_edge(0, 5, SE3())


def test_add_vertex_twice_raises():
    graph = PoseGraph()
    graph.add_vertex(0)
    with pytest.raises(ValueError):
        graph.add_vertex(0)


def test_add_edge_bad_information_shape_raises():
    graph = PoseGraph()
    graph.add_vertex(0)
    graph.add_vertex(1)
    with pytest.raises(ValueError):
        graph.add_edge(0, 1, SE3(), np.eye(3))


def test_write_read_round_trip():
    poses = _true_poses()
    graph = _graph(poses)
    info = np.eye(6) * 2.0
    info[0, 1] = info[1, 0] = 0.5
    graph.add_edge(1, 3, poses[1].inverse() * poses[3], info)
    buffer = io.StringIO()
    graph.write(buffer)
    buffer.seek(0)
    back = read_pose_graph(buffer)
    assert list(back.vertices) == list(graph.vertices)
    assert back.fixed == {0}
    for k in graph.vertices:
        assert np.allclose(back.vertices[k].matrix(), graph.vertices[k].matrix())
    assert len(back.edges) == len(graph.edges)
    for a, b in zip(back.edges, graph.edges):
        assert (a.i, a.j) == (b.i, b.j)
        assert np.allclose(a.information, b.information)
        assert np.allclose(a.measurement.matrix(), b.measurement.matrix())


def test_written_lines_start_with_tags():
    graph = _graph(_true_poses())
    buffer = io.StringIO()
    graph.write(buffer)
    lines = buffer.getvalue().splitlines()
    assert sum(line.startswith(VERTEX_TAG + " ") for line in lines) == 4
    assert sum(line.startswith(EDGE_TAG + " ") for line in lines) == len(PAIRS)
    assert len(lines[-1].split()) == 1 + 2 + 7 + 21


def test_read_partial_information_keeps_identity():
    text = (
        f"{VERTEX_TAG} 0 0 0 0 0 0 0 1\n"
        f"{VERTEX_TAG} 1 1 0 0 0 0 0 1\n"
        "FIX 0\n"
        f"{EDGE_TAG} 0 1 1 0 0 0 0 0 1 10000 0 0 0 0 0\n"
    )
    graph = read_pose_graph(io.StringIO(text))
    info = graph.edges[0].information
    assert info[0, 0] == 10000.0
    assert info[1, 1] == 1.0
    assert graph.fixed == {0}
    assert graph.total_error() < 1e-20


def test_read_malformed_line_raises():
    with pytest.raises(ValueError):
        read_pose_graph(io.StringIO(f"{VERTEX_TAG} 0 1 2\n"))


def test_read_edge_to_missing_vertex_raises():
    text = f"{VERTEX_TAG} 0 0 0 0 0 0 0 1\n{EDGE_TAG} 0 7 0 0 0 0 0 0 1\n"
    with pytest.raises(ValueError):
        read_pose_graph(io.StringIO(text))


def test_main_optimizes_and_saves(tmp_path, capsys):
    graph = _graph(_true_poses(), perturb=True)
    source = tmp_path / "graph.g2o"
    with open(source, "w", encoding="utf-8") as stream:
        graph.write(stream)
    output = tmp_path / "result.g2o"
    assert main([str(source), "--output", str(output)]) == 0
    assert "read total 4 vertices, 5 edges." in capsys.readouterr().out
    with open(output, encoding="utf-8") as stream:
        result = read_pose_graph(stream)
    assert result.total_error() < graph.total_error()


def test_main_missing_file(tmp_path, capsys):
    missing = tmp_path / "absent.g2o"
    assert main([str(missing)]) == 1
    assert "does not exist" in capsys.readouterr().out