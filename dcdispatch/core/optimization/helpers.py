import logging

from dcdispatch.core.config import SolverConfiguration
from dcdispatch.core.network.model import NetworkModel


def log_problem_statistics(network: NetworkModel, logger: logging.Logger,
                           solver_config: SolverConfiguration | None = None):
    logger.info("----------------------Problem Statistics---------------------")
    logger.info("Buses: %s", network.n_buses)
    logger.info("Lines: %s", network.n_lines)
    logger.info("Slack bus: %s", network.slack_bus_id)
    logger.info("Free angles: %s", network.dimension)
    logger.info("")
    logger.info("Total demand [MW]: %s", network.total_demand)
    logger.info("Total generation capacity [MW]: %s", float(network.gen_max.sum()))
    if solver_config is not None:
        logger.info("")
        logger.info("Interpolation points: %s", 2 * network.dimension + 1)
        logger.info("Max evaluations: %s", solver_config.max_evaluations)
        logger.info("Convergence tolerance: %s", solver_config.convergence_tolerance)
        logger.info("Parallel initialization: %s", solver_config.parallel_initialization_flag)
    logger.info("--------------------------------------------------------------")
    return
