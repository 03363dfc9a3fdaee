from dataclasses import dataclass, field
from datetime import datetime as dt
import os
from pathlib import Path
from tqdm import tqdm
from typing import Any
from typing import Dict

import numpy as np
import numpy.typing as npt
import toml

from pgreen.greens.convergence import Convergence
from pgreen.greens.ewald import AUTO_SPLITTING, EwaldGreen
from pgreen.types.lattice import Lattice
from pgreen.utils.logging import logger


def load_configuration(path_to_configuration_file: str) -> Dict[str, Any]:
    extension = os.path.splitext(path_to_configuration_file)[-1].lower()
    if extension != ".toml":
        raise ValueError(f"expected a `.toml` file, received a `{extension}` file")

    path_to_configuration_file = Path(".").joinpath(path_to_configuration_file)
    if not os.path.exists(path_to_configuration_file):
        raise ValueError(f"file {path_to_configuration_file} not found")

    return toml.load(path_to_configuration_file)


@dataclass
class GreenParameters:
    wavenumber: complex
    bloch_vector: npt.NDArray[np.float64] = field(
        default_factory=lambda: np.zeros(2)
    )
    splitting_parameter: float = AUTO_SPLITTING
    exclude_inner_cells: bool = False

    @classmethod
    def from_file(cls, path_to_configuration_file: str) -> "GreenParameters":
        parsed_configuration = load_configuration(path_to_configuration_file)["Green"]

        # complex numbers are stored as [re, im]
        wavenumber = parsed_configuration["wavenumber"]
        if isinstance(wavenumber, list):
            wavenumber = complex(wavenumber[0], wavenumber[1] if len(wavenumber) > 1 else 0.0)

        return cls(
            complex(wavenumber),
            np.asarray(parsed_configuration.get("bloch_vector", [0.0, 0.0]), dtype=np.float64),
            float(parsed_configuration.get("splitting_parameter", AUTO_SPLITTING)),
            bool(parsed_configuration.get("exclude_inner_cells", False)),
        )


def convergence_from_file(path_to_configuration_file: str) -> Convergence:
    """Reads the optional [Convergence] table, defaulting every missing field."""
    parsed_configuration = load_configuration(path_to_configuration_file).get("Convergence", {})
    return Convergence(**parsed_configuration)


@dataclass
class Calculation:
    name: str
    lattice: Lattice
    parameters: GreenParameters
    observation_points: npt.NDArray[np.float64]
    convergence: Convergence = field(default_factory=Convergence)

    @classmethod
    def from_file(cls, path_to_configuration_file: str) -> "Calculation":
        observation_points = np.atleast_2d(np.asarray(
            load_configuration(path_to_configuration_file)["Points"]["observation_points"],
            dtype=np.float64,
        ))
        return cls(
            os.path.basename(Path(path_to_configuration_file)),
            Lattice.from_file(path_to_configuration_file),
            GreenParameters.from_file(path_to_configuration_file),
            observation_points,
            convergence_from_file(path_to_configuration_file),
        )

    def green(self) -> EwaldGreen:
        return EwaldGreen(
            self.lattice,
            self.parameters.splitting_parameter,
            self.parameters.exclude_inner_cells,
            self.convergence,
        )

    def evaluate(self) -> npt.NDArray[np.complex128]:
        """
        Evaluates the periodic Green's function and its derivatives at every
        observation point, returning an (N, 8) array.
        """
        green = self.green()
        result = np.zeros((self.observation_points.shape[0], 8), dtype=np.complex128)

        start = dt.now()
        logger.info(
            f"evaluating {self.name} at {self.observation_points.shape[0]} points "
            f"on a {self.lattice.dimension}D {self.lattice.symmetry.name.lower()} lattice"
        )
        try:
            for ii in tqdm(range(self.observation_points.shape[0]), leave=False):
                result[ii] = green(
                    self.observation_points[ii],
                    self.parameters.wavenumber,
                    self.parameters.bloch_vector,
                )
        except Exception:
            logger.error("Unexpected exception in evaluation step", exc_info=True)
            raise

        seconds_elapsed = (dt.now() - start).total_seconds()
        logger.success(f"Green's function evaluated in {seconds_elapsed:.3f}s")

        return result
