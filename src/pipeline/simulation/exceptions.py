"""Error kinds raised by the simulation pipeline."""


class SimulationError(Exception):
    """Base class for simulation pipeline errors."""


class DataGenerationError(SimulationError):
    """Invalid subgroup sizes or generator settings. Fatal for the replication."""


class MissingnessInjectionError(SimulationError):
    """The requested missing rate cannot be reached with the pattern catalog."""


class ImputationError(SimulationError):
    """An imputation strategy failed. Recorded as a missing ARI."""


class ModelFittingError(SimulationError):
    """The growth curve model or the tree search failed. Recorded as a missing ARI."""
