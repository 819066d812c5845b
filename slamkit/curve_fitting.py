"""Fitting y = exp(a*x^2 + b*x + c) to noisy samples by non-linear least squares."""

from __future__ import annotations

import argparse
import time
from dataclasses import dataclass, field

import numpy as np

TRUE_PARAMS = (1.0, 2.0, 1.0)
INITIAL_PARAMS = (2.0, -1.0, 5.0)


@dataclass
class FitResult:
    """Outcome of a fit.

    ``history`` holds one ``(cost, update, params)`` tuple per accepted step,
    where ``cost`` is the sum of squared errors before the update.
    """

    params: np.ndarray
    cost: float
    iterations: int
    history: list = field(default_factory=list)


def exp_model(abc, x):
    """Evaluate exp(a*x^2 + b*x + c)."""
    a, b, c = np.asarray(abc, dtype=float).reshape(3)
    x = np.asarray(x, dtype=float)
    return np.exp(a * x * x + b * x + c)


def generate_data(n=100, a=1.0, b=2.0, c=1.0, sigma=1.0, seed=None):
    """Sample ``n`` points at x = i/100 with Gaussian noise of standard deviation sigma**2."""
    if n < 0:
        raise ValueError("number of points must not be negative")
    rng = np.random.default_rng(seed)
    x = np.arange(n) / 100.0
    y = exp_model((a, b, c), x) + rng.normal(0.0, sigma * sigma, size=n)
    return x, y


def _prepare(x_data, y_data, initial, sigma):
    x = np.asarray(x_data, dtype=float).reshape(-1)
    y = np.asarray(y_data, dtype=float).reshape(-1)
    if x.shape != y.shape:
        raise ValueError("x and y data must have the same length")
    if x.size == 0:
        raise ValueError("no data to fit")
    params = np.asarray(initial, dtype=float).reshape(-1)
    if params.shape != (3,):
        raise ValueError("initial estimate must have three parameters")
    if sigma <= 0:
        raise ValueError("sigma must be positive")
    return x, y, params.copy()


def _residuals_and_jacobian(params, x, y):
    f = exp_model(params, x)
    r = y - f
    J = -np.column_stack((x * x * f, x * f, f))
    return r, J


def gauss_newton(x_data, y_data, initial=INITIAL_PARAMS, sigma=1.0, iterations=100):
    """Gauss-Newton iterations, stopping when the cost no longer decreases."""
    x, y, params = _prepare(x_data, y_data, initial, sigma)
    weight = 1.0 / (sigma * sigma)
    history = []
    last_cost = 0.0
    with np.errstate(over="ignore", invalid="ignore"):
        for it in range(iterations):
            r, J = _residuals_and_jacobian(params, x, y)
            cost = float(r @ r)
            H = weight * (J.T @ J)
            g = -weight * (J.T @ r)
            try:
                dx = np.linalg.solve(H, g)
            except np.linalg.LinAlgError:
                break
            if not np.all(np.isfinite(dx)):
                break
            if it > 0 and cost >= last_cost:
                break
            params = params + dx
            last_cost = cost
            history.append((cost, dx, params.copy()))
        r, _ = _residuals_and_jacobian(params, x, y)
    return FitResult(params, float(r @ r), len(history), history)


def levenberg_marquardt(x_data, y_data, initial=INITIAL_PARAMS, sigma=1.0, iterations=50):
    """Levenberg-Marquardt with a damping term scaled by the Hessian diagonal."""
    x, y, params = _prepare(x_data, y_data, initial, sigma)
    weight = 1.0 / (sigma * sigma)
    history = []
    with np.errstate(over="ignore", invalid="ignore"):
        r, J = _residuals_and_jacobian(params, x, y)
        cost = float(r @ r)
        H = weight * (J.T @ J)
        lam = 1e-4 * float(np.max(np.diag(H))) if np.all(np.isfinite(H)) else 1e-4
        lam = lam or 1e-4
        for _ in range(iterations):
            if cost == 0.0:
                break
            g = -weight * (J.T @ r)
            damped = H + lam * np.diag(np.diag(H))
            try:
                dx = np.linalg.solve(damped, g)
            except np.linalg.LinAlgError:
                lam *= 10.0
                continue
            if not np.all(np.isfinite(dx)):
                lam *= 10.0
                continue
            if np.linalg.norm(dx) <= 1e-12 * (np.linalg.norm(params) + 1e-12):
                break
            candidate = params + dx
            new_r, new_J = _residuals_and_jacobian(candidate, x, y)
            new_cost = float(new_r @ new_r)
            if np.isfinite(new_cost) and new_cost < cost:
                history.append((cost, dx, candidate.copy()))
                improvement = cost - new_cost
                params, r, J = candidate, new_r, new_J
                previous, cost = cost, new_cost
                H = weight * (J.T @ J)
                lam = max(lam / 3.0, 1e-15)
                if improvement <= 1e-10 * previous:
                    break
            else:
                lam *= 10.0
    return FitResult(params, cost, len(history), history)


def _fmt(values, sep=" "):
    return sep.join(f"{v:g}" for v in values)


def main(argv=None):
    """Fit the exponential curve to generated data and print the estimate."""
    parser = argparse.ArgumentParser(
        prog="slamkit-curve-fitting",
        description="Fit y = exp(a*x^2 + b*x + c) to noisy samples.",
    )
    parser.add_argument(
        "--method",
        choices=("gauss-newton", "levenberg-marquardt"),
        default="gauss-newton",
    )
    parser.add_argument("--points", type=int, default=100)
    parser.add_argument("--sigma", type=float, default=1.0)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--iterations", type=int, default=None)
    args = parser.parse_args(argv)

    x, y = generate_data(args.points, *TRUE_PARAMS, sigma=args.sigma, seed=args.seed)
    solver = gauss_newton if args.method == "gauss-newton" else levenberg_marquardt
    kwargs = {"sigma": args.sigma}
    if args.iterations is not None:
        kwargs["iterations"] = args.iterations

    start = time.perf_counter()
    result = solver(x, y, INITIAL_PARAMS, **kwargs)
    elapsed = time.perf_counter() - start

    for cost, dx, params in result.history:
        print(f"total cost: {cost:g}, \t\tupdate: {_fmt(dx)}\t\testimated params: {_fmt(params, ',')}")
    print(f"solve time cost = {elapsed} seconds. ")
    print("estimated abc = " + ", ".join(repr(float(v)) for v in result.params))
    return 0