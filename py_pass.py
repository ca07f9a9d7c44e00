#!/usr/bin/env python
import math

import numpy as np
from scipy.spatial.distance import cdist


class ResultsLayers:
    def __init__(self):
        self.nTriplets = 0
        self.nFirstLayer = 0
        self.nAccretionTriplets = 0
        self.nAccreted = []


class RESULTS:
    def __init__(self):
        self.nAtoms = 0
        self.latticeSpacing = 0.0
        self.totalNeighbors = 0
        self.maxNeighbors = 0
        self.nProbes = 0
        self.nPockets = 0
        self.layers = ResultsLayers()
        self.valid = 0


# ── Struct-of-Arrays containers ───────────────────────────────────────────────
#
# ProbeArray          – probes, and the pocket spheres reported from them
# NeighborList        – CSR neighbour lists (first / count / nn)
# SimpleNeighborArray – padded per-entity view of a NeighborList
#
# All numeric data lives in pre-allocated numpy arrays so the collision and
# density filters can run as numpy reductions.

class ProbeArray:
    """
    Struct-of-arrays container for probe spheres.

    Rows are appended in placement order and may be overwritten in place by
    replace() when weeding keeps a better-buried candidate.  Only the first
    len(self) rows are meaningful; call finalize() to trim.
    """

    _INITIAL_CAP = 1024

    def __init__(self):
        cap = self._INITIAL_CAP
        self._n   = 0
        self._cap = cap

        self.xyz    = np.zeros((cap, 3), dtype=np.float64)
        self.radius = np.zeros(cap, dtype=np.float64)
        self.bc     = np.zeros(cap, dtype=np.int32)

    def _grow(self):
        new_cap = max(self._cap * 2, self._INITIAL_CAP)
        for f in ('radius', 'bc'):
            old = getattr(self, f)
            new = np.zeros(new_cap, dtype=old.dtype)
            new[:self._n] = old[:self._n]
            setattr(self, f, new)

        xyz_old = self.xyz
        self.xyz = np.zeros((new_cap, 3), dtype=np.float64)
        self.xyz[:self._n] = xyz_old[:self._n]

        self._cap = new_cap

    def append(self, xyz, radius, bc):
        """Add one probe and return its index."""
        if self._n >= self._cap:
            self._grow()
        i = self._n
        self.xyz[i]    = xyz
        self.radius[i] = radius
        self.bc[i]     = bc
        self._n += 1
        return i

    def replace(self, i, xyz, radius, bc):
        if i < 0 or i >= self._n:
            raise IndexError("ProbeArray index out of range")
        self.xyz[i]    = xyz
        self.radius[i] = radius
        self.bc[i]     = bc

    def __len__(self):   return self._n

    def finalize(self):
        """Trim all arrays to [0:n].  Later appends grow them again."""
        self.xyz    = self.xyz[:self._n].copy()
        self.radius = self.radius[:self._n].copy()
        self.bc     = self.bc[:self._n].copy()
        self._cap   = self._n


class NeighborList:
    '''
    Compact neighbour lists.  The neighbours of entity i are
    nn[first[i] : first[i] + count[i]] in ascending index order.
    '''

    def __init__(self, first, count, nn):
        self.first = first
        self.count = count
        self.nn = nn
        self.max_neighbors = int(count.max()) if len(count) else 0

    def __len__(self):   return len(self.first)

    def neighbors(self, i):
        return self.nn[self.first[i]:self.first[i] + self.count[i]]

    def common_neighbors(self, i, j):
        """Sorted intersection of the neighbour lists of i and j."""
        return np.intersect1d(self.neighbors(i), self.neighbors(j), assume_unique=True)

    def triplets(self):
        """
        All (i, j, k) with i < j < k that are pairwise neighbours, ordered by
        i, then j, then k.

        Returns
        -------
        triplets : np.ndarray (T, 3) int32
        """
        out = []
        for i in range(len(self)):
            ni = self.neighbors(i)
            for j in ni[ni > i]:
                common = self.common_neighbors(i, j)
                ks = common[common > j]
                if len(ks) == 0:
                    continue
                tri = np.empty((len(ks), 3), dtype=np.int32)
                tri[:, 0] = i
                tri[:, 1] = j
                tri[:, 2] = ks
                out.append(tri)

        if not out:
            return np.zeros((0, 3), dtype=np.int32)
        return np.concatenate(out, axis=0)


class SimpleNeighborArray:
    '''
    Store the information needed to work with neighbors
    '''


    def __init__(self, cap, max_neighbors):
        self._cap = cap
        self._max_neighbors = max_neighbors

        self.xyz = np.full((cap, max_neighbors, 3), np.nan, dtype=np.float64)
        self.radius = np.full((cap, max_neighbors), np.nan, dtype=np.float64)
        self.natom = np.full((cap, max_neighbors), -1, dtype=np.int32)
        self.nneighbors = np.zeros((cap,), dtype=np.int32)

    @staticmethod
    def from_neighbor_list(neighbor_list, xyz, radius):
        N = len(neighbor_list)
        array = SimpleNeighborArray(N, max(neighbor_list.max_neighbors, 1))
        for i in range(N):
            nidx = neighbor_list.neighbors(i)
            n = len(nidx)
            if n == 0:
                continue
            array.xyz[i, :n]    = xyz[nidx]
            array.radius[i, :n] = radius[nidx]
            array.natom[i, :n]  = nidx
            array.nneighbors[i] = n
        return array


def build_neighbor_list(xyz, radius, rprobe):
    """
    Neighbour lists for a set of spheres.

    j is a neighbour of i when the two spheres, each grown by rprobe, overlap:
    d2(i, j) < (r_i + 2 * rprobe + r_j)**2 and i != j.  The test is symmetric
    so j lists i whenever i lists j.

    Parameters
    ----------
    xyz    : np.ndarray (N, 3)
    radius : np.ndarray (N,)
    rprobe : float

    Returns
    -------
    NeighborList
    """
    N = len(radius)
    if N == 0:
        empty = np.zeros(0, dtype=np.int32)
        return NeighborList(empty, empty.copy(), empty.copy())

    # ── all-pairs squared distances ───────────────────────────────────
    d2 = cdist(xyz, xyz, metric='sqeuclidean')      # (N, N)

    # ── bridge threshold matrix ───────────────────────────────────────
    bridge2 = (radius[:, None] + 2.0 * rprobe + radius[None, :]) ** 2   # (N, N)

    neighbor_mask = d2 < bridge2
    np.fill_diagonal(neighbor_mask, False)

    count = neighbor_mask.sum(axis=1).astype(np.int32)       # (N,)
    first = np.zeros(N, dtype=np.int32)
    first[1:] = np.cumsum(count)[:-1]

    # row-major nonzero keeps each row's neighbours in ascending order
    nn = np.nonzero(neighbor_mask)[1].astype(np.int32)

    return NeighborList(first, count, nn)


class Lattice:
    '''
    Uniform grid for near neighbour lookups.

    Objects are binned into cubic cells of edge `spacing`.  query_near()
    returns everything in the 27 cells around a point, so any object closer
    than `spacing` is guaranteed to be in the result.  Callers check the
    exact distance themselves.
    '''

    def __init__(self, spacing):
        if spacing <= 0.0:
            raise ValueError("search distance must be > 0.0")
        self.spacing = float(spacing)
        self.cells = {}

    def box(self, xyz):
        return tuple(int(c) for c in np.floor(np.asarray(xyz, dtype=np.float64) / self.spacing))

    def add(self, natom, xyz):
        self.cells.setdefault(self.box(xyz), []).append(int(natom))

    def query_near(self, xyz):
        bi, bj, bk = self.box(xyz)
        ids = []
        for i in (bi - 1, bi, bi + 1):
            for j in (bj - 1, bj, bj + 1):
                for k in (bk - 1, bk, bk + 1):
                    cell = self.cells.get((i, j, k))
                    if cell:
                        ids.extend(cell)
        return np.array(ids, dtype=np.int32)


# ── Triple placement ──────────────────────────────────────────────────────────

def vec_construct_probe_placements(xi, ri, xj, rj, xk, rk, rp):
    """
    Place a probe of radius rp touching three spheres, for Q triplets at once.

    xi, xj, xk : (Q, 3)  sphere centres
    ri, rj, rk : (Q,)    sphere radii
    rp         : float or (Q,)

    Returns
    -------
    p0, p1 : (Q, 3)  the two probe centres, one either side of the plane of
                     the three centres
    ok     : (Q,)    False where no placement exists (coincident or collinear
                     centres, or spheres too far apart for the probe to touch
                     all three).  p0 / p1 rows are meaningless there.
    """
    xi = np.asarray(xi, dtype=np.float64)
    xj = np.asarray(xj, dtype=np.float64)
    xk = np.asarray(xk, dtype=np.float64)

    eri = np.asarray(ri, dtype=np.float64) + rp      # (Q,)
    erj = np.asarray(rj, dtype=np.float64) + rp      # (Q,)
    erk = np.asarray(rk, dtype=np.float64) + rp      # (Q,)

    diff_ij = xj - xi                                # (Q, 3)
    diff_ik = xk - xi                                # (Q, 3)
    dij     = np.linalg.norm(diff_ij, axis=-1)       # (Q,)
    dik     = np.linalg.norm(diff_ik, axis=-1)       # (Q,)

    ok = (dij > 0.0) & (dik > 0.0)
    dij = np.where(ok, dij, 1.0)
    dik = np.where(ok, dik, 1.0)

    uij = diff_ij / dij[:, None]                     # (Q, 3)
    uik = diff_ik / dik[:, None]                     # (Q, 3)

    # ── centres of the two contact circles ───────────────────────────
    asymm_ij = (eri**2 - erj**2) / dij
    tij      = (xi + xj) * 0.5 + uij * (asymm_ij * 0.5)[:, None]   # (Q, 3)
    asymm_ik = (eri**2 - erk**2) / dik
    tik      = (xi + xk) * 0.5 + uik * (asymm_ik * 0.5)[:, None]   # (Q, 3)

    # ── angle at i ────────────────────────────────────────────────────
    dt    = np.einsum('qi,qi->q', uij, uik)
    wijk  = np.arccos(np.clip(dt, -1.0, 1.0))
    swijk = np.sin(wijk)

    ok &= (dt < 1.0) & (dt > -1.0) & (swijk > 0.0)
    swijk = np.where(ok, swijk, 1.0)

    # ── base point in the plane of the three centres ─────────────────
    uijk = np.cross(uij, uik) / swijk[:, None]       # (Q, 3)
    utb  = np.cross(uijk, uij)                       # (Q, 3)

    dt_b = np.einsum('qi,qi->q', uik, tik - tij)
    bijk = tij + utb * (dt_b / swijk)[:, None]       # (Q, 3)

    hijk_sq = eri**2 - np.einsum('qi,qi->q', bijk - xi, bijk - xi)
    ok &= hijk_sq > 0.0
    hijk = np.sqrt(np.where(ok, hijk_sq, 0.0))

    p0 = bijk + uijk * hijk[:, None]
    p1 = bijk - uijk * hijk[:, None]

    return p0, p1, ok


def construct_probe_placement(xi, ri, xj, rj, xk, rk, rp):
    """
    Single-triplet form of vec_construct_probe_placements.

    Returns (p0, p1) or None when the probe cannot touch all three spheres.
    """
    p0, p1, ok = vec_construct_probe_placements(
        np.asarray(xi, dtype=np.float64).reshape(1, 3), [ri],
        np.asarray(xj, dtype=np.float64).reshape(1, 3), [rj],
        np.asarray(xk, dtype=np.float64).reshape(1, 3), [rk],
        rp,
    )
    if not ok[0]:
        return None
    return p0[0], p1[0]


# ── Apollonius ────────────────────────────────────────────────────────────────

APOLLO_TOL = 1e-6

IP1 = (1, 2, 0)
IP2 = (2, 0, 1)


def tangent_sphere(xs, rs):
    """
    Sphere touching four given spheres (3-D Apollonius problem), by Yeates'
    spherical inversion (JMB 1995, 249, 804-815).

    The smallest sphere is shrunk to a point and used as the centre of a
    unit inversion sphere.  The other three spheres, shrunk by the same
    amount, invert to three spheres whose common tangent plane inverts back
    to the wanted sphere.

    Parameters
    ----------
    xs : array-like (4, 3)  centres
    rs : array-like (4,)    radii

    Returns
    -------
    (center, radius) with |center - xs[i]| == rs[i] + radius, or None when
    the configuration is degenerate or has no solution.
    """
    xs = np.asarray(xs, dtype=np.float64).reshape(4, 3)
    rs = np.asarray(rs, dtype=np.float64).reshape(4)

    il = 0
    for i in range(1, 4):
        if rs[i] < rs[il]:
            il = i

    x0 = xs[il]
    r0 = rs[il]

    # ── invert the other three spheres ────────────────────────────────
    rv = np.zeros(3)
    xv = np.zeros((3, 3))
    js = 0
    for i in range(4):
        if i == il:
            continue
        rv[js] = rs[i] - r0
        xv[js] = xs[i] - x0
        s = -rv[js] * rv[js] + np.dot(xv[js], xv[js])
        if s < APOLLO_TOL:
            return None
        rv[js] /= s
        xv[js] /= s
        js += 1

    # ── common tangent planes of the inverted spheres ─────────────────
    rd = rv[:2] - rv[2]          # (2,)
    xd = xv[:2] - xv[2]          # (2, 3)

    xt = np.cross(xd[0], xd[1])
    im = int(np.argmax(np.abs(xt)))
    if abs(xt[im]) < APOLLO_TOL:
        return None

    p1 = IP1[im]
    p2 = IP2[im]

    a1 = (xd[0, p2] * xd[1, im] - xd[1, p2] * xd[0, im]) / xt[im]
    b1 = (xd[0, p2] * rd[1]     - xd[1, p2] * rd[0])     / xt[im]
    a2 = (xd[1, p1] * xd[0, im] - xd[0, p1] * xd[1, im]) / xt[im]
    b2 = (xd[1, p1] * rd[0]     - xd[0, p1] * rd[1])     / xt[im]

    a = a1 * a1 + a2 * a2 + 1.0
    b = a1 * b1 + a2 * b2
    c = b * b - a * (b1 * b1 + b2 * b2 - 1.0)

    if c < -APOLLO_TOL:
        return None
    c = math.sqrt(max(c, 0.0))

    def plane(nim):
        n = np.zeros(3)
        n[im] = nim
        n[p1] = a1 * nim + b1
        n[p2] = a2 * nim + b2
        return n, rv[0] + np.dot(n, xv[0])

    n1, rt1 = plane((c - b) / a)
    n2, rt2 = plane(-(c + b) / a)

    if rt2 < -APOLLO_TOL and rt1 < -APOLLO_TOL:
        return None

    # smallest positive distance from the inversion centre wins
    if rt2 < -APOLLO_TOL or (rt1 >= -APOLLO_TOL and rt1 < rt2):
        n, rt = n1, rt1
    else:
        n, rt = n2, rt2

    if rt <= 0.0:
        return None

    # ── invert the plane back to a sphere ─────────────────────────────
    rt = 0.5 / rt
    return x0 + rt * n, rt - r0


EXCLUSION_SPACING = 4.1


def generate_tangent_spheres(xyz, radii, max_radius=3.0, min_radius=1.5, min_angle=1.5,
                             exclusion_xyz=None, exclusion_radii=None, trace_visible=False):
    """
    All spheres tangent to four of the given atoms.

    Every quadruple whose atoms are pairwise within max_radius + r_a + r_b is
    solved with tangent_sphere().  A solution is kept when its radius lies
    strictly between min_radius and max_radius, it does not overlap any
    exclusion atom other than the four that define it, and the widest angle
    subtended at its centre by two of the four atoms exceeds min_angle
    degrees.

    Exclusion atoms default to the input atoms.

    Returns
    -------
    ProbeArray  centres and radii of the accepted spheres (bc is 0)
    """
    xyz   = np.asarray(xyz, dtype=np.float64).reshape(-1, 3)
    radii = np.asarray(radii, dtype=np.float64).reshape(-1)
    if len(xyz) != len(radii):
        raise ValueError("xyz and radii must have the same length")

    same_set = exclusion_xyz is None
    if same_set:
        exclusion_xyz, exclusion_radii = xyz, radii
    else:
        exclusion_xyz   = np.asarray(exclusion_xyz, dtype=np.float64).reshape(-1, 3)
        exclusion_radii = np.asarray(exclusion_radii, dtype=np.float64).reshape(-1)

    lattice = Lattice(EXCLUSION_SPACING)
    for natom, x in enumerate(exclusion_xyz):
        lattice.add(natom, x)

    spheres = ProbeArray()
    N = len(radii)
    if N < 4:
        spheres.finalize()
        return spheres

    d2    = cdist(xyz, xyz, metric='sqeuclidean')
    reach = (max_radius + radii[:, None] + radii[None, :]) ** 2
    close = d2 < reach
    np.fill_diagonal(close, False)

    quad_count = 0

    for a0 in range(N):
        for a1 in np.where(close[a0, a0 + 1:])[0] + a0 + 1:
            c01 = close[a0] & close[a1]
            for a2 in np.where(c01[a1 + 1:])[0] + a1 + 1:
                c012 = c01 & close[a2]
                for a3 in np.where(c012[a2 + 1:])[0] + a2 + 1:
                    quad = np.array([a0, a1, a2, a3])
                    quad_count += 1

                    solution = tangent_sphere(xyz[quad], radii[quad])
                    if solution is None:
                        continue
                    center, radius = solution
                    if not (min_radius < radius < max_radius):
                        continue

                    # ── exclusion clash ───────────────────────────────
                    ids = lattice.query_near(center)
                    if same_set:
                        ids = ids[~np.isin(ids, quad)]
                    elif len(ids):
                        defining = cdist(exclusion_xyz[ids], xyz[quad], metric='sqeuclidean')
                        ids = ids[defining.min(axis=1) > 1e-8]
                    if len(ids):
                        dx = np.square(exclusion_xyz[ids] - center).sum(axis=-1)
                        if np.any(dx < (radius + exclusion_radii[ids]) ** 2):
                            continue

                    # ── widest angle between the four contacts ────────
                    u = xyz[quad] - center
                    u /= np.linalg.norm(u, axis=-1, keepdims=True)
                    cosines = (u @ u.T)[np.triu_indices(4, k=1)]
                    max_angle = math.degrees(math.acos(min(1.0, max(-1.0, cosines.min()))))
                    if max_angle <= min_angle:
                        continue

                    spheres.append(center, radius, 0)

    if trace_visible:
        print(f"quadCount   {quad_count}")
        print(f"sphereCount {len(spheres)}")

    spheres.finalize()
    return spheres


# ── PASS ──────────────────────────────────────────────────────────────────────

REQUIRED_SETTINGS = ('rprobe', 'bcthreshold', 'rbc', 'rweed', 'raccretion')
INT_SETTINGS = ('bcthreshold', 'max_accretion_iterations', 'chunk_size')

POCKET_CUTOFF = 2.5
POCKET_MIN_NEIGHBORS = 4


class PassCalculator:
    """
    PASS (Putative Active Sites with Spheres) pocket detection.

    "Fast Prediction and Visualization of Protein Binding Pockets With PASS",
    G. Patrick Brady, Jr. and Pieter F.W. Stouten, JCAMD, 14: 383-401, 2000.

    Probes of radius rprobe are placed on every atom triplet, kept when they
    are buried (at least bcthreshold atoms within rbc) and weeded so no two
    lie closer than sqrt(rweed).  Further layers of raccretion spheres are
    accreted onto probe triplets until a layer adds nothing, and probes that
    sit inside dense clusters are reported as pocket spheres.

    All working state lives on self.run and is rebuilt by every Calc().
    """

    def __init__(self):

        self.settings = type("Settings", (), {})()
        self.settings.rprobe = None
        self.settings.bcthreshold = None
        self.settings.rbc = None
        self.settings.rweed = None
        self.settings.raccretion = None
        self.settings.max_accretion_iterations = 1000
        self.settings.chunk_size = 4096

        self.trace_visible = False
        self.trace_error = True

        self.reset()

    def reset(self):
        self.run = type("Run", (), {})()
        self.run.radmax         = 0.0
        self.run.results        = RESULTS()
        self.run.atom_xyz       = np.zeros((0, 3), dtype=np.float64)
        self.run.atom_radius    = np.zeros(0, dtype=np.float64)
        self.run.lattice        = None
        self.run.neighbor_list  = None
        self.run.neighbor_array = None
        self.run.probes         = ProbeArray()
        self.run.pockets        = ProbeArray()

    # ── configuration ─────────────────────────────────────────────────────

    def load_settings(self, values):
        """
        Copy settings from a mapping.

        Keys are matched case-insensitively with an optional "PASS." prefix,
        so both {"rprobe": 1.8} and {"PASS.rprobe": "1.8"} work.  Unknown
        keys are ignored.  Returns the number of settings applied.
        """
        applied = 0
        for key, value in values.items():
            name = key.strip().lower()
            if name.startswith("pass."):
                name = name[len("pass."):]
            if name not in REQUIRED_SETTINGS and name not in INT_SETTINGS:
                continue
            try:
                if name in INT_SETTINGS:
                    # "55" and "55.0" are both fine, "55.5" is not
                    number = float(value)
                    if not number.is_integer():
                        raise ValueError(value)
                    value = int(number)
                else:
                    value = float(value)
            except (TypeError, ValueError):
                raise ValueError(f"Bad value for PASS setting {key}: {value!r}")
            setattr(self.settings, name, value)
            applied += 1

        return applied

    def read_settings(self, filename="pass.settings"):
        """
        Read PASS settings from a text file.

        One setting per line, "PASS.rprobe 1.8" or "PASS.rprobe = 1.8";
        anything after a # is a comment.

        Returns:
            1 if at least one setting was read
            0 otherwise
        """

        try:
            with open(filename, "r") as f:
                lines = f.readlines()
        except OSError:
            if self.trace_error:
                print(f"Failed to read {filename}")
            return 0

        values = {}

        for line in lines:
            line = line.split("#", 1)[0].replace("=", " ").strip()
            if not line:
                continue

            parts = line.split()
            if len(parts) < 2:
                continue

            values[parts[0]] = parts[1]

        applied = self.load_settings(values)

        if self.trace_visible:
            print(f"PASS settings read: {applied}")

        return 1 if applied else 0

    def check_settings(self):
        missing = [name for name in REQUIRED_SETTINGS
                   if getattr(self.settings, name, None) is None]
        if missing:
            raise ValueError(f"PASS settings not supplied: {', '.join(missing)}")

        if self.trace_visible:
            print("PASS analysis")
            print(f"Rprobe      = {self.settings.rprobe:.2f}")
            print(f"BCthreshold = {self.settings.bcthreshold}")
            print(f"Rbc         = {self.settings.rbc:.2f}")
            print(f"Rweed       = {self.settings.rweed:.2f}")
            print(f"Raccretion  = {self.settings.raccretion:.2f}")

    # ── entry points ──────────────────────────────────────────────────────

    def AddAtoms(self, xyz, radii):
        """
        Load atoms from numpy arrays.  May be called more than once.

        Parameters
        ----------
        xyz   : np.ndarray   shape (N, 3)   atom centres
        radii : np.ndarray   shape (N,)     van der Waals radii
        """
        xyz   = np.asarray(xyz, dtype=np.float64).reshape(-1, 3)
        radii = np.asarray(radii, dtype=np.float64).reshape(-1)
        if len(xyz) != len(radii):
            raise ValueError(f"Got {len(xyz)} atom centres but {len(radii)} radii")

        self.run.atom_xyz    = np.concatenate([self.run.atom_xyz, xyz])
        self.run.atom_radius = np.concatenate([self.run.atom_radius, radii])
        self.run.results.nAtoms += len(radii)

    def Calc(self, xyz, radii):
        self.reset()
        self.AddAtoms(xyz, radii)
        return self.CalcLoaded()

    def CalcLoaded(self):
        self.run.results.valid = 0

        self.setup_run()

        self.construct_probe_placements()

        self.accrete()

        self.run.probes.finalize()
        self.run.results.nProbes = len(self.run.probes)

        pockets = self.select_pocket_probes()

        self.run.results.valid = 1
        return pockets

    def setup_run(self):
        """
        Validate settings, drop probes from any earlier run, and build the
        lattice and atom neighbour lists for the atoms loaded now.
        """
        self.check_settings()

        if len(self.run.atom_radius) == 0:
            raise ValueError("No atoms loaded")

        # probes are only valid for the atoms they were placed on
        self.run.probes         = ProbeArray()
        self.run.pockets        = ProbeArray()
        self.run.results.layers = ResultsLayers()
        self.run.results.nProbes  = 0
        self.run.results.nPockets = 0

        self.run.radmax = float(self.run.atom_radius.max())

        self.build_lattice()

        nl = build_neighbor_list(self.run.atom_xyz, self.run.atom_radius, self.settings.rprobe)
        self.run.neighbor_list  = nl
        self.run.neighbor_array = SimpleNeighborArray.from_neighbor_list(
                                        nl, self.run.atom_xyz, self.run.atom_radius)

        self.run.results.totalNeighbors = len(nl.nn)
        self.run.results.maxNeighbors   = nl.max_neighbors

        if self.trace_visible:
            print(f"total neighbours   {len(nl.nn):7d}")
            print(f"maximum neighbours {nl.max_neighbors:7d}")

    def build_lattice(self):
        # cells must hold every atom that can clash with a probe, and every
        # atom within rbc for burial counts
        spacing = 2.0 * self.run.radmax + 2.0 * self.settings.rprobe
        if spacing < self.settings.rbc:
            spacing = self.settings.rbc

        if self.trace_visible:
            print(f"lattice spacing {spacing:.1f}")

        self.run.results.latticeSpacing = spacing + 0.1
        self.run.lattice = Lattice(spacing + 0.1)
        for natom, xyz in enumerate(self.run.atom_xyz):
            self.run.lattice.add(natom, xyz)

    # ── per-point atom tests ──────────────────────────────────────────────

    def burial_count(self, xyz):
        """Number of atoms within rbc of the point."""
        ids = self.run.lattice.query_near(xyz)
        if len(ids) == 0:
            return 0
        d2 = np.square(self.run.atom_xyz[ids] - xyz).sum(axis=-1)
        return int((d2 < self.settings.rbc ** 2).sum())

    def clashed(self, xyz, rp):
        """Does a sphere of radius rp at xyz overlap any atom."""
        ids = self.run.lattice.query_near(xyz)
        if len(ids) == 0:
            return False
        d2 = np.square(self.run.atom_xyz[ids] - xyz).sum(axis=-1)
        return bool(np.any(d2 < (self.run.atom_radius[ids] + rp) ** 2))

    def vec_obscured(self, points, triplets, rp):
        """
        Is each point, grown by rp, inside a neighbour of its generating atoms?

        points   : (Q, 3)
        triplets : (Q, 3) int  the atoms i, j, k the point was built from;
                                they never obscure their own placement.

        Returns (Q,) bool.
        """
        na = self.run.neighbor_array
        obscured = np.zeros(len(points), dtype=bool)

        # k first, then i, then j
        for col in (2, 0, 1):
            owner = triplets[:, col]
            coll_xyz   = na.xyz[owner]             # (Q, K, 3)
            coll_rad   = na.radius[owner]          # (Q, K)
            coll_natom = na.natom[owner]           # (Q, K)

            diff = points[:, None, :] - coll_xyz
            d2   = np.einsum('qki,qki->qk', diff, diff)

            exclude = (
                (coll_natom == triplets[:, 0, None]) |
                (coll_natom == triplets[:, 1, None]) |
                (coll_natom == triplets[:, 2, None]) |
                (coll_natom < 0)
            )
            within = (d2 < (coll_rad + rp) ** 2) & ~exclude & ~np.isnan(coll_rad)
            obscured |= within.any(axis=-1)

        return obscured

    # ── probe set ─────────────────────────────────────────────────────────

    def weed_insert(self, xyz, radius, bc):
        """
        Add a candidate probe unless it duplicates an existing one.

        Of the probes within sqrt(rweed) of the candidate, the least buried is
        replaced in place if the candidate is strictly more buried; otherwise
        the candidate is dropped.  Returns True only when a new probe was
        appended.
        """
        probes = self.run.probes
        n = len(probes)

        if n:
            d2 = np.square(probes.xyz[:n] - xyz).sum(axis=-1)
            close = np.where(d2 < self.settings.rweed)[0]
        else:
            close = ()

        if len(close) == 0:
            probes.append(xyz, radius, bc)
            return True

        weed = close[np.argmin(probes.bc[close])]
        if bc > probes.bc[weed]:
            probes.replace(weed, xyz, radius, bc)

        return False

    def self_clustered(self, xyz, triplet):
        """Does a raccretion sphere at xyz overlap a probe outside its triplet."""
        probes = self.run.probes
        n = len(probes)
        d2 = np.square(probes.xyz[:n] - xyz).sum(axis=-1)
        r = 2.0 * self.settings.raccretion
        close = d2 < r * r
        close[triplet] = False
        return bool(close.any())

    # ── layer 0 ───────────────────────────────────────────────────────────

    def construct_probe_placements(self):
        """
        Place rprobe probes on every atom triplet and keep the buried ones.

        Returns the number of probes in the first layer.
        """
        atom_xyz = self.run.atom_xyz
        atom_rad = self.run.atom_radius
        rp       = self.settings.rprobe
        chunk    = self.settings.chunk_size

        triplets = self.run.neighbor_list.triplets()
        self.run.results.layers.nTriplets = len(triplets)

        if self.trace_visible:
            print(f"triplets {len(triplets):7d}")

        for start in range(0, len(triplets), chunk):
            tri = triplets[start:start + chunk]
            i, j, k = tri[:, 0], tri[:, 1], tri[:, 2]

            p0, p1, ok = vec_construct_probe_placements(
                atom_xyz[i], atom_rad[i],
                atom_xyz[j], atom_rad[j],
                atom_xyz[k], atom_rad[k],
                rp,
            )

            # p0 then p1 for each triplet
            points   = np.stack([p0, p1], axis=1).reshape(-1, 3)   # (2T, 3)
            cand_tri = np.repeat(tri, 2, axis=0)                   # (2T, 3)
            cand_ok  = np.repeat(ok, 2)                            # (2T,)

            if not cand_ok.any():
                continue

            cand_ok[cand_ok] = ~self.vec_obscured(points[cand_ok], cand_tri[cand_ok], rp)

            for q in np.where(cand_ok)[0]:
                bc = self.burial_count(points[q])
                if bc < self.settings.bcthreshold:
                    continue
                self.weed_insert(points[q], rp, bc)

        n = len(self.run.probes)
        self.run.results.layers.nFirstLayer = n
        return n

    # ── layers 1..N ───────────────────────────────────────────────────────

    def accrete(self):
        """
        Run accretion passes until one adds no probe.

        Returns the number of passes, including the final empty one.
        """
        max_iterations = self.settings.max_accretion_iterations

        for iteration in range(max_iterations):
            added = self.accretion_pass()
            self.run.results.layers.nAccreted.append(added)
            if added == 0:
                return iteration + 1

        raise RuntimeError(
            f"Accretion did not converge after {max_iterations} passes "
            f"({len(self.run.probes)} probes)"
        )

    def accretion_pass(self):
        """
        Grow one layer of raccretion spheres on triplets of current probes.

        Triplets and their placements come from a snapshot taken at the start
        of the pass; accepted spheres are appended to the live probe set.
        Returns the number of probes added.
        """
        probes = self.run.probes
        n      = len(probes)
        ra     = self.settings.raccretion
        chunk  = self.settings.chunk_size

        if self.trace_visible:
            print(f"first layer {n:5d}")

        if n < 3:
            return 0

        snap_xyz = probes.xyz[:n].copy()
        snap_rad = probes.radius[:n].copy()

        triplets = build_neighbor_list(snap_xyz, snap_rad, ra).triplets()
        self.run.results.layers.nAccretionTriplets += len(triplets)

        added = 0

        for start in range(0, len(triplets), chunk):
            tri = triplets[start:start + chunk]
            i, j, k = tri[:, 0], tri[:, 1], tri[:, 2]
            rad = np.full(len(tri), ra)

            p0, p1, ok = vec_construct_probe_placements(
                snap_xyz[i], rad,
                snap_xyz[j], rad,
                snap_xyz[k], rad,
                ra,
            )

            points   = np.stack([p0, p1], axis=1).reshape(-1, 3)
            cand_tri = np.repeat(tri, 2, axis=0)
            cand_ok  = np.repeat(ok, 2)

            for q in np.where(cand_ok)[0]:
                point = points[q]
                if self.clashed(point, self.settings.rprobe):
                    continue
                bc = self.burial_count(point)
                if bc < self.settings.bcthreshold:
                    continue
                if self.self_clustered(point, cand_tri[q]):
                    continue
                if self.weed_insert(point, ra, bc):
                    added += 1

        if self.trace_visible:
            print(f"second layer {added:5d}")

        return added

    # ── pocket selection ──────────────────────────────────────────────────

    def select_pocket_probes(self):
        """
        Report the probes that sit in dense sub-clusters.

        A probe is dense when at least POCKET_MIN_NEIGHBORS probes lie within
        POCKET_CUTOFF of it; it is reported when at least that many of those
        neighbours are themselves dense.  Reported spheres get radius rprobe
        and their burial count as score.
        """
        probes  = self.run.probes
        n       = len(probes)
        pockets = ProbeArray()

        if n:
            xyz   = probes.xyz[:n]
            close = cdist(xyz, xyz, metric='sqeuclidean') < POCKET_CUTOFF ** 2   # (P, P)
            np.fill_diagonal(close, False)

            count1 = close.sum(axis=1)                                           # (P,)
            dense  = count1 >= POCKET_MIN_NEIGHBORS
            count2 = (close & dense[:, None] & dense[None, :]).sum(axis=1)       # (P,)

            for i in np.where(count2 >= POCKET_MIN_NEIGHBORS)[0]:
                pockets.append(xyz[i], self.settings.rprobe, self.burial_count(xyz[i]))

        pockets.finalize()
        self.run.pockets = pockets
        self.run.results.nPockets = len(pockets)
        return pockets


def format_pdb_spheres(spheres, resname="PAS", chain="A"):
    """
    PDB HETATM records for a set of spheres: radius in the occupancy column,
    burial count in the B-factor column.
    """
    lines = []
    for i in range(len(spheres)):
        x, y, z = spheres.xyz[i]
        serial = (i + 1) % 100000
        lines.append(
            f"HETATM{serial:5d}  PS  {resname:>3s} {chain:1s}{serial % 10000:4d}    "
            f"{x:8.3f}{y:8.3f}{z:8.3f}{spheres.radius[i]:6.2f}{float(spheres.bc[i]):6.2f}"
            f"           C"
        )
    return lines


if __name__ == '__main__':

    import sys

    xyzr = np.loadtxt(sys.argv[1], ndmin=2)
    settings_file = sys.argv[2] if len(sys.argv) > 2 else "pass.settings"

    calc = PassCalculator()
    if not calc.read_settings(settings_file):
        sys.exit(f"No PASS settings read from {settings_file}")

    pockets = calc.Calc(xyzr[:, :3], xyzr[:, 3])

    for line in format_pdb_spheres(pockets):
        print(line)
