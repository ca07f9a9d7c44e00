#!/usr/bin/env python
"""
Geometry tests: Apollonius tangent spheres, triple probe placement and the
tangent-sphere generator.

Usage:
    python test/apollo_test.py
or
    pytest test/
"""
import os
import sys

import numpy as np

_TEST_DIR = os.path.dirname(os.path.abspath(__file__))
_ROOT_DIR = os.path.dirname(_TEST_DIR)
sys.path.insert(0, _ROOT_DIR)

from py_pass import (
    tangent_sphere,
    construct_probe_placement,
    vec_construct_probe_placements,
    generate_tangent_spheres,
)

# ── Configuration ─────────────────────────────────────────────────────────────

TOLERANCE = 1e-3

CANONICAL_XYZ = np.array([
    [17.865, 12.489, 19.724],
    [19.306, 12.704, 19.536],
    [19.864, 12.583, 20.965],
    [20.429, 11.557, 21.263],
])
CANONICAL_R = np.array([1.7, 1.65, 1.65, 1.55])


def _rel_diff(a, b):
    denom = max(abs(a), abs(b), 1e-12)
    return abs(a - b) / denom


def _check_tangent(center, radius, xs, rs, tol=TOLERANCE):
    for x, r in zip(xs, rs):
        d = np.linalg.norm(x - center)
        assert _rel_diff(d, r + radius) < tol, \
            f"distance {d:.5f} != {r:.3f} + {radius:.5f}"


# ── tangent_sphere ────────────────────────────────────────────────────────────

def test_canonical_tangent_sphere():
    solution = tangent_sphere(CANONICAL_XYZ, CANONICAL_R)
    assert solution is not None

    center, radius = solution
    assert radius > 0.0
    _check_tangent(center, radius, CANONICAL_XYZ, CANONICAL_R)


def test_tangent_sphere_input_order_irrelevant():
    center, radius = tangent_sphere(CANONICAL_XYZ, CANONICAL_R)

    order = [3, 1, 0, 2]
    center2, radius2 = tangent_sphere(CANONICAL_XYZ[order], CANONICAL_R[order])

    assert abs(radius - radius2) < 1e-6
    assert np.allclose(center, center2, atol=1e-6)


def test_identical_centers_no_solution():
    xs = CANONICAL_XYZ.copy()
    rs = CANONICAL_R.copy()
    # the smallest sphere is the inversion centre
    xs[1] = xs[3]
    assert tangent_sphere(xs, rs) is None

    # equal radii as well
    rs[1] = rs[3]
    assert tangent_sphere(xs, rs) is None


def test_duplicate_sphere_no_solution():
    xs = CANONICAL_XYZ.copy()
    rs = CANONICAL_R.copy()
    xs[2] = xs[1]
    rs[2] = rs[1]
    assert tangent_sphere(xs, rs) is None


def test_collinear_centers_no_solution():
    xs = np.array([
        [0.0, 0.0, 0.0],
        [2.0, 0.0, 0.0],
        [4.0, 0.0, 0.0],
        [6.0, 0.0, 0.0],
    ])
    assert tangent_sphere(xs, np.ones(4)) is None


def test_coplanar_equal_radii_no_solution():
    xs = np.array([
        [0.0, 0.0, 0.0],
        [3.0, 0.0, 0.0],
        [0.0, 3.0, 0.0],
        [3.0, 3.0, 0.0],
    ])
    assert tangent_sphere(xs, np.ones(4)) is None


def test_regular_tetrahedron_tangent_sphere():
    R = 3.0
    xs = (R / np.sqrt(3.0)) * np.array([
        [ 1.0,  1.0,  1.0],
        [ 1.0, -1.0, -1.0],
        [-1.0,  1.0, -1.0],
        [-1.0, -1.0,  1.0],
    ])
    rs = np.full(4, 1.5)

    center, radius = tangent_sphere(xs, rs)

    assert np.allclose(center, 0.0, atol=1e-6)
    assert abs(radius - (R - 1.5)) < 1e-6


# ── Triple placement ──────────────────────────────────────────────────────────

def test_probe_placement_touches_all_three():
    xi = np.array([0.0, 0.0, 0.0])
    xj = np.array([3.2, 0.0, 0.0])
    xk = np.array([1.1, 2.9, 0.3])
    ri, rj, rk = 1.7, 1.5, 1.6
    rp = 1.4

    placement = construct_probe_placement(xi, ri, xj, rj, xk, rk, rp)
    assert placement is not None

    for p in placement:
        for x, r in ((xi, ri), (xj, rj), (xk, rk)):
            assert abs(np.linalg.norm(p - x) - (r + rp)) < 1e-9

    # one probe on each side of the plane of the centres
    normal = np.cross(xj - xi, xk - xi)
    p0, p1 = placement
    assert np.dot(p0 - xi, normal) * np.dot(p1 - xi, normal) < 0.0


def test_probe_placement_failures():
    rp = 1.4

    # too far apart
    assert construct_probe_placement(
        [0, 0, 0], 1.5, [10, 0, 0], 1.5, [5, 8, 0], 1.5, rp) is None

    # collinear
    assert construct_probe_placement(
        [0, 0, 0], 1.5, [2, 0, 0], 1.5, [4, 0, 0], 1.5, rp) is None

    # coincident
    assert construct_probe_placement(
        [0, 0, 0], 1.5, [0, 0, 0], 1.5, [2, 1, 0], 1.5, rp) is None


def test_vectorised_matches_single():
    rng = np.random.default_rng(7)
    Q = 50
    xi = rng.uniform(-2, 2, (Q, 3))
    xj = rng.uniform(-2, 2, (Q, 3))
    xk = rng.uniform(-2, 2, (Q, 3))
    ri = rng.uniform(1.2, 1.9, Q)
    rj = rng.uniform(1.2, 1.9, Q)
    rk = rng.uniform(1.2, 1.9, Q)

    p0, p1, ok = vec_construct_probe_placements(xi, ri, xj, rj, xk, rk, 1.4)

    assert ok.any()
    for q in range(Q):
        single = construct_probe_placement(xi[q], ri[q], xj[q], rj[q], xk[q], rk[q], 1.4)
        if not ok[q]:
            assert single is None
            continue
        assert np.allclose(single[0], p0[q])
        assert np.allclose(single[1], p1[q])


# ── Tangent sphere generator ──────────────────────────────────────────────────

def test_generate_tangent_spheres_canonical():
    center, radius = tangent_sphere(CANONICAL_XYZ, CANONICAL_R)

    spheres = generate_tangent_spheres(CANONICAL_XYZ, CANONICAL_R, min_radius=0.05)
    assert len(spheres) == 1
    assert np.allclose(spheres.xyz[0], center)
    assert abs(spheres.radius[0] - radius) < 1e-9
    assert spheres.bc[0] == 0

    # default lower bound rejects it
    spheres = generate_tangent_spheres(CANONICAL_XYZ, CANONICAL_R)
    assert len(spheres) == 0


def test_generate_tangent_spheres_exclusion():
    center, radius = tangent_sphere(CANONICAL_XYZ, CANONICAL_R)

    # the defining atoms themselves never exclude
    ex_xyz = CANONICAL_XYZ.copy()
    spheres = generate_tangent_spheres(CANONICAL_XYZ, CANONICAL_R, min_radius=0.05,
                                       exclusion_xyz=ex_xyz, exclusion_radii=CANONICAL_R)
    assert len(spheres) == 1

    # an atom sitting on the solution does
    ex_xyz = np.vstack([CANONICAL_XYZ, center])
    ex_r   = np.append(CANONICAL_R, 1.0)
    spheres = generate_tangent_spheres(CANONICAL_XYZ, CANONICAL_R, min_radius=0.05,
                                       exclusion_xyz=ex_xyz, exclusion_radii=ex_r)
    assert len(spheres) == 0


def test_generate_tangent_spheres_too_few_atoms():
    spheres = generate_tangent_spheres(CANONICAL_XYZ[:3], CANONICAL_R[:3])
    assert len(spheres) == 0


# ── Main ──────────────────────────────────────────────────────────────────────

def run_test():
    tests = [(name, obj) for name, obj in sorted(globals().items())
             if name.startswith('test_') and callable(obj)]
    failed = 0
    for name, test in tests:
        try:
            test()
        except AssertionError as e:
            failed += 1
            print(f"FAIL {name}: {e}")
        else:
            print(f"ok   {name}")

    if failed:
        print(f"{failed} of {len(tests)} tests failed")
        sys.exit(1)
    print(f"PASS: {len(tests)} tests")


if __name__ == '__main__':
    run_test()
