#!/usr/bin/env python
import argparse
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path

from dcdispatch.core.config import DispatchConfiguration, SolverConfiguration
from dcdispatch.core.errors import ConfigurationError, DegenerateGeometryError, DispatchError
from dcdispatch.core.network.model import NetworkModel
from dcdispatch.core.optimization.helpers import log_problem_statistics
from dcdispatch.core.optimization.objective import ObjectiveEvaluator
from dcdispatch.core.optimization.results import DispatchReporter, DispatchResult
from dcdispatch.core.optimization.trust_region import TerminationStatus, solve
from dcdispatch.logger import get_dcdispatch_logger

logger = logging.getLogger(__name__)

EXIT_CODES = {
    TerminationStatus.CONVERGED: 0,
    TerminationStatus.BUDGET_EXHAUSTED: 1,
}
EXIT_ERROR = 2


def run_dispatch(network: NetworkModel, solver_config: SolverConfiguration | None = None) -> DispatchResult:
    """
    Find the least-cost dispatch of a DC network.

    Parameters
    ----------
    network : NetworkModel
        Validated network.
    solver_config : SolverConfiguration, optional
        Solver settings; defaults when omitted.

    Returns
    -------
    DispatchResult
        Angles, dispatch, line flows, cost and feasibility warnings.

    Raises
    ------
    DegenerateGeometryError
        When the optimizer cannot keep its interpolation set poised.
    """
    if solver_config is None:
        solver_config = SolverConfiguration()
    log_problem_statistics(network, logger, solver_config)

    objective = ObjectiveEvaluator(network)
    reporter = DispatchReporter(network)

    if network.dimension == 0:
        logger.info("Single-bus network: no free angles, evaluating the dispatch directly.")
        cost = objective.evaluate([])
        return reporter.report([], TerminationStatus.CONVERGED, total_cost=cost, n_evaluations=1)

    bounds = solver_config.bounds_for(network.dimension)
    timer_start = time.time()
    result = solve(objective, bounds, solver_config)
    timer_end = time.time()
    logger.info("Optimisation time [sec]: %.3f", timer_end - timer_start)

    result.raise_for_status()
    if result.status is TerminationStatus.BUDGET_EXHAUSTED:
        logger.warning("Evaluation budget exhausted; reporting the best point found.")
    return reporter.build(result)


def run_dispatch_model(dispatch_config: DispatchConfiguration) -> DispatchResult:
    logger.info("++++++++++++")
    logger.info("+DCDISPATCH+")
    logger.info("++++++++++++")
    logger.info("Case: %s", dispatch_config.case_name)
    logger.info("Max evaluations: %s", dispatch_config.solver.max_evaluations)
    logger.info("++++++++++++")

    network = dispatch_config.network.build_network()
    result = run_dispatch(network, dispatch_config.solver)
    DispatchReporter(network).log_summary(result)
    return result


def run_dispatch_from_file(filepath: Path) -> DispatchResult:
    return run_dispatch_model(DispatchConfiguration.from_file(filepath))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Least-cost DC power flow dispatch with a derivative-free trust-region solver."
    )
    parser.add_argument("case", type=Path, help="Path to the YAML case file.")
    parser.add_argument("--max-evaluations", type=int, help="Override the evaluation budget.")
    parser.add_argument("--tolerance", type=float, help="Override the convergence tolerance.")
    parser.add_argument(
        "--workers",
        type=int,
        help="Evaluate the initial interpolation points on this many threads.",
    )
    parser.add_argument("--log-file", type=Path, help="Also write the log to this file.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log optimizer iterations.")
    args = parser.parse_args(argv)

    try:
        dispatch_config = DispatchConfiguration.from_file(args.case)
        level = logging.DEBUG if args.verbose else dispatch_config.log_level
        get_dcdispatch_logger(log_file=args.log_file, level=level)

        overrides = {}
        if args.max_evaluations is not None:
            overrides["max_evaluations"] = args.max_evaluations
        if args.tolerance is not None:
            overrides["convergence_tolerance"] = args.tolerance
        if args.workers is not None:
            overrides["n_workers"] = args.workers
            overrides["parallel_initialization_flag"] = args.workers > 1
        if overrides:
            dispatch_config.solver = replace(dispatch_config.solver, **overrides)

        result = run_dispatch_model(dispatch_config)
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_ERROR
    except DegenerateGeometryError as exc:
        logger.error("Optimisation failed: %s", exc)
        return EXIT_ERROR
    except DispatchError as exc:
        logger.error("Dispatch failed: %s", exc)
        return EXIT_ERROR
    return EXIT_CODES[result.status]


if __name__ == "__main__":
    sys.exit(main())
