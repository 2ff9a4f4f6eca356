"""L1-optimal camera path: linear program construction and solve.

Notation, with t indexing frames:
- F(t): observed motion of frame t (maps frame t to frame t-1).
- B(t): corrective update for frame t; B(0) is fixed to identity.
- R(t) = F(t+1) B(t+1) - B(t): residual motion of the smoothed path, a 2x3
  expression that is linear in the parameters of B(t) and B(t+1).

Objective, summed over the 6 entries of each term:
    w1 * |R(t)| + w2 * |R(t+1) - R(t)| + w3 * |R(t+2) - 2 R(t+1) + R(t)|
    + proximity * |p(t) - identity|

Each |e| is linearized with a slack s >= 0 and the pair of rows
    e - s <= 0,   -e - s <= 0
so minimizing the weighted slack sum minimizes the weighted L1 norm.

B(t) uses five parameters p = (dx, dy, a, b, c) with B = [[a, b, dx], [c, a, dy]].
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

from stabilization.config import PathConfig
from stabilization.cropper import Rectangle
from stabilization.errors import PathGapError, SolverError, StabilizationError
from stabilization.geometry import IDENTITY_PARAMS, N_PARAMS, identity_affine, params_to_affine
from stabilization.progress import PATH_OPTIMIZATION, CancelToken, ProgressListener, StageReporter
from stabilization.video_state import MOTION_OK, MOTION_UNAVAILABLE, Video


logger = logging.getLogger(__name__)

# Entry m = 3 * row + col of a 2x3 matrix -> index of the parameter filling it.
_B_ENTRY_PARAM = (2, 3, 0, 4, 2, 1)
_IDENTITY_ENTRIES = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)
_TRANSLATION_ENTRIES = (2, 5)
_TRANSLATION_PARAMS = (0, 1)

_SOLVER_STATUS = {
    0: "optimal",
    1: "iteration_or_time_limit",
    2: "infeasible",
    3: "unbounded",
    4: "numerical_difficulties",
}

Expr = Tuple[Dict[int, float], float]


def _combine(pairs: Sequence[Tuple[float, Expr]]) -> Expr:
    """Linear combination sum(coef * expr) of (terms, constant) expressions."""
    terms: Dict[int, float] = {}
    const = 0.0
    for coef, (expr_terms, expr_const) in pairs:
        if coef == 0.0:
            continue
        for idx, value in expr_terms.items():
            terms[idx] = terms.get(idx, 0.0) + coef * value
        const += coef * expr_const
    return {k: v for k, v in terms.items() if v != 0.0}, const


def bridge_motion_gaps(motions: Sequence[Optional[object]], max_gap: int):
    """Fill missing observed motions by entry-wise linear interpolation.

    Args:
        motions: Per-frame observed transforms; index 0 is ignored.
        max_gap: Longest run of consecutive missing frames that may be bridged.

    Returns:
        (filled, bridged_indices). `filled[0]` is None.

    Raises:
        PathGapError: If a run of missing frames is longer than `max_gap`.
    """

    import numpy as np  # type: ignore

    n = len(motions)
    filled: List[Optional[object]] = [None] + [
        None if m is None else np.asarray(m, dtype=np.float64) for m in motions[1:]
    ]
    bridged: List[int] = []
    t = 1
    while t < n:
        if filled[t] is not None:
            t += 1
            continue
        start = t
        while t < n and filled[t] is None:
            t += 1
        end = t - 1
        length = end - start + 1
        if length > max_gap:
            raise PathGapError(
                f"{length} consecutive frames without observed motion (max_gap={max_gap})",
                stage=PATH_OPTIMIZATION,
                frame_index=start,
            )
        left = filled[start - 1] if start - 1 >= 1 else None
        right = filled[end + 1] if end + 1 < n else None
        for k in range(start, end + 1):
            if left is not None and right is not None:
                alpha = (k - (start - 1)) / float(end + 1 - (start - 1))
                filled[k] = (1.0 - alpha) * left + alpha * right
            elif left is not None:
                filled[k] = left.copy()
            elif right is not None:
                filled[k] = right.copy()
            else:
                filled[k] = identity_affine()
            bridged.append(k)
    return filled, bridged


@dataclass
class PathProblem:
    """Assembled LP: minimize c @ x subject to A_ub @ x <= b_ub and bounds."""

    c: object
    A_ub: object
    b_ub: object
    bounds: List[Tuple[Optional[float], Optional[float]]]
    n_frames: int
    n_param_vars: int
    motions: List[Optional[object]]
    bridged_frames: List[int]
    term_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def n_variables(self) -> int:
        return len(self.bounds)

    @property
    def n_constraints(self) -> int:
        return int(self.A_ub.shape[0]) if self.A_ub is not None else 0

    def param_index(self, t: int, k: int) -> int:
        return (t - 1) * N_PARAMS + k


@dataclass
class PathSolution:
    updates: List[object]
    objective: float
    status: int
    message: str
    iterations: int
    runtime_ms: float
    n_variables: int
    n_constraints: int
    bridged_frames: List[int]
    motions: List[Optional[object]]

    def as_dict(self) -> dict:
        return {
            "objective": float(self.objective),
            "status": int(self.status),
            "status_name": _SOLVER_STATUS.get(int(self.status), "unknown"),
            "message": self.message,
            "iterations": int(self.iterations),
            "runtime_ms": float(self.runtime_ms),
            "n_variables": int(self.n_variables),
            "n_constraints": int(self.n_constraints),
            "bridged_frames": list(self.bridged_frames),
        }


class _ProblemBuilder:
    """Accumulates variables, objective costs and sparse <= rows."""

    def __init__(self) -> None:
        self.costs: List[float] = []
        self.bounds: List[Tuple[Optional[float], Optional[float]]] = []
        self.rows: List[int] = []
        self.cols: List[int] = []
        self.vals: List[float] = []
        self.rhs: List[float] = []

    def add_var(self, cost: float, lo: Optional[float], hi: Optional[float]) -> int:
        self.costs.append(float(cost))
        self.bounds.append((lo, hi))
        return len(self.costs) - 1

    def add_row(self, terms: Dict[int, float], rhs: float) -> None:
        row = len(self.rhs)
        for col, val in terms.items():
            self.rows.append(row)
            self.cols.append(col)
            self.vals.append(float(val))
        self.rhs.append(float(rhs))

    def add_abs(self, expr: Expr, weight: float) -> int:
        """Add slack s >= |expr| with objective weight; return slack index."""
        terms, const = expr
        slack = self.add_var(weight, 0.0, None)
        pos = dict(terms)
        pos[slack] = -1.0
        self.add_row(pos, -const)
        neg = {k: -v for k, v in terms.items()}
        neg[slack] = -1.0
        self.add_row(neg, const)
        return slack

    def add_range(self, terms: Dict[int, float], lo: float, hi: float) -> None:
        self.add_row(terms, hi)
        self.add_row({k: -v for k, v in terms.items()}, -lo)

    def build(self):
        import numpy as np  # type: ignore
        from scipy import sparse  # type: ignore

        n_vars = len(self.costs)
        A = sparse.coo_matrix(
            (self.vals, (self.rows, self.cols)),
            shape=(len(self.rhs), n_vars),
        ).tocsr()
        return np.asarray(self.costs, dtype=np.float64), A, np.asarray(self.rhs, dtype=np.float64)


class PathOptimizer:
    """Solve the L1 camera-path LP and store each frame's corrective transform.

    Reads: `Frame.observed_transform`, `Frame.motion_status`.
    Writes: `Frame.update_transform`, `Frame.bridged`, `Video.crop_window`.
    Nothing is written when the solve fails.
    """

    def __init__(
        self,
        config: Optional[PathConfig] = None,
        progress: Optional[ProgressListener] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.config = config if config is not None else PathConfig()
        self.progress = progress
        self.cancel = cancel

    def _param_bounds(self) -> List[Tuple[Optional[float], Optional[float]]]:
        cfg = self.config

        def _sym(limit: Optional[float]) -> Tuple[Optional[float], Optional[float]]:
            if limit is None:
                return (None, None)
            return (-float(limit), float(limit))

        return [
            _sym(cfg.max_shift_x),
            _sym(cfg.max_shift_y),
            (1.0 - float(cfg.max_scale), 1.0 + float(cfg.max_scale)),
            _sym(cfg.max_rotation),
            _sym(cfg.max_rotation),
        ]

    def build_problem(self, video: Video, window: Rectangle) -> PathProblem:
        """Assemble objective, constraint matrix and bounds for `video`.

        Raises:
            StabilizationError: If motion estimation has not run on every frame.
            PathGapError: If a motion gap is too long to bridge.
        """

        cfg = self.config
        n = video.frame_count
        for frame in video.frames[1:]:
            if frame.motion_status not in (MOTION_OK, MOTION_UNAVAILABLE):
                raise StabilizationError(
                    "observed motion missing; run motion estimation first",
                    stage=PATH_OPTIMIZATION,
                    frame_index=frame.index,
                )
        motions, bridged = bridge_motion_gaps(video.observed_transforms(), int(cfg.max_gap))
        if bridged:
            logger.warning("Bridging %d frames without observed motion: %s", len(bridged), bridged)

        builder = _ProblemBuilder()
        param_bounds = self._param_bounds()
        for _t in range(1, n):
            for k in range(N_PARAMS):
                lo, hi = param_bounds[k]
                builder.add_var(0.0, lo, hi)
        n_param_vars = len(builder.costs)

        def pidx(t: int, k: int) -> int:
            return (t - 1) * N_PARAMS + k

        def b_entry(t: int, m: int) -> Expr:
            if t == 0:
                return {}, _IDENTITY_ENTRIES[m]
            return {pidx(t, _B_ENTRY_PARAM[m]): 1.0}, 0.0

        residuals: List[List[Expr]] = []
        for t in range(0, n - 1):
            F = motions[t + 1]
            entries = []
            for i in range(2):
                for j in range(3):
                    m = 3 * i + j
                    fb = _combine(
                        [
                            (float(F[i, 0]), b_entry(t + 1, j)),
                            (float(F[i, 1]), b_entry(t + 1, 3 + j)),
                            (1.0, ({}, float(F[i, 2]) if j == 2 else 0.0)),
                        ]
                    )
                    entries.append(_combine([(1.0, fb), (-1.0, b_entry(t, m))]))
            residuals.append(entries)

        entry_weight = [
            1.0 if m in _TRANSLATION_ENTRIES else float(cfg.affine_weight) for m in range(6)
        ]
        w1, w2, w3 = (float(w) for w in cfg.weights)
        counts = {"d1": 0, "d2": 0, "d3": 0, "proximity": 0}
        for m in range(6):
            if w1 > 0.0:
                for t in range(len(residuals)):
                    builder.add_abs(residuals[t][m], w1 * entry_weight[m])
                    counts["d1"] += 1
            if w2 > 0.0:
                for t in range(len(residuals) - 1):
                    expr = _combine([(1.0, residuals[t + 1][m]), (-1.0, residuals[t][m])])
                    builder.add_abs(expr, w2 * entry_weight[m])
                    counts["d2"] += 1
            if w3 > 0.0:
                for t in range(len(residuals) - 2):
                    expr = _combine(
                        [
                            (1.0, residuals[t + 2][m]),
                            (-2.0, residuals[t + 1][m]),
                            (1.0, residuals[t][m]),
                        ]
                    )
                    builder.add_abs(expr, w3 * entry_weight[m])
                    counts["d3"] += 1

        if cfg.proximity > 0.0:
            for t in range(1, n):
                for k in range(N_PARAMS):
                    weight = float(cfg.proximity) * (1.0 if k in _TRANSLATION_PARAMS else float(cfg.affine_weight))
                    builder.add_abs(({pidx(t, k): 1.0}, -IDENTITY_PARAMS[k]), weight)
                    counts["proximity"] += 1

        width, height = video.frame_size
        corners = window.corners()
        for t in range(1, n):
            dx, dy, a, b, c = (pidx(t, k) for k in range(N_PARAMS))
            builder.add_range({b: 1.0, c: 1.0}, -float(cfg.max_skew), float(cfg.max_skew))
            # Window corner (x, y) maps to (a x + b y + dx, c x + a y + dy).
            for x, y in corners:
                x_terms = {k: v for k, v in ((a, x), (b, y), (dx, 1.0)) if v != 0.0}
                y_terms = {k: v for k, v in ((c, x), (a, y), (dy, 1.0)) if v != 0.0}
                builder.add_range(x_terms, 0.0, float(width - 1))
                builder.add_range(y_terms, 0.0, float(height - 1))

        c_vec, A_ub, b_ub = builder.build()
        return PathProblem(
            c=c_vec,
            A_ub=A_ub,
            b_ub=b_ub,
            bounds=builder.bounds,
            n_frames=n,
            n_param_vars=n_param_vars,
            motions=motions,
            bridged_frames=bridged,
            term_counts=counts,
        )

    def solve(self, problem: PathProblem) -> PathSolution:
        """Run the external LP solver and extract per-frame corrective transforms.

        Raises:
            SolverError: If the solver does not report an optimal solution.
        """

        from scipy.optimize import linprog  # type: ignore

        options = {}
        if self.config.time_limit is not None:
            options["time_limit"] = float(self.config.time_limit)
        t0 = time.perf_counter()
        result = linprog(
            problem.c,
            A_ub=problem.A_ub,
            b_ub=problem.b_ub,
            bounds=problem.bounds,
            method=self.config.solver_method,
            options=options or None,
        )
        runtime_ms = (time.perf_counter() - t0) * 1000.0
        status = int(result.status)
        if status != 0 or result.x is None:
            name = _SOLVER_STATUS.get(status, "unknown")
            raise SolverError(
                f"camera path LP {name}: {result.message}",
                status=status,
                stage=PATH_OPTIMIZATION,
            )

        x = result.x
        updates = [identity_affine()]
        for t in range(1, problem.n_frames):
            start = problem.param_index(t, 0)
            updates.append(params_to_affine(x[start:start + N_PARAMS]))
        return PathSolution(
            updates=updates,
            objective=float(result.fun),
            status=status,
            message=str(result.message),
            iterations=int(getattr(result, "nit", 0) or 0),
            runtime_ms=runtime_ms,
            n_variables=problem.n_variables,
            n_constraints=problem.n_constraints,
            bridged_frames=list(problem.bridged_frames),
            motions=list(problem.motions),
        )

    def optimize(self, video: Video, window: Rectangle) -> PathSolution:
        """Build, solve and write back the corrective path for `video`."""

        reporter = StageReporter(PATH_OPTIMIZATION, self.progress, self.cancel)
        reporter.start()
        if video.frame_count < 2:
            for frame in video:
                frame.update_transform = identity_affine()
                frame.bridged = False
            video.crop_window = window
            reporter.finish()
            return PathSolution(
                updates=[identity_affine() for _ in video.frames],
                objective=0.0,
                status=0,
                message="trivial path",
                iterations=0,
                runtime_ms=0.0,
                n_variables=0,
                n_constraints=0,
                bridged_frames=[],
                motions=[None for _ in video.frames],
            )

        problem = self.build_problem(video, window)
        reporter.step(1, 3)
        logger.info(
            "Solving camera path LP: %d variables, %d constraints, terms=%s",
            problem.n_variables,
            problem.n_constraints,
            problem.term_counts,
        )
        solution = self.solve(problem)
        reporter.step(2, 3)

        bridged = set(solution.bridged_frames)
        for frame, update in zip(video.frames, solution.updates):
            frame.update_transform = update
            frame.bridged = frame.index in bridged
        video.crop_window = window
        logger.info(
            "Camera path solved: objective=%.6f iterations=%d runtime_ms=%.1f",
            solution.objective,
            solution.iterations,
            solution.runtime_ms,
        )
        reporter.step(3, 3)
        reporter.finish()
        return solution
