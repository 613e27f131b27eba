# SPDX-License-Identifier: MIT
"""
Feed-forward controller that turns a cell's sensor vector into one action.

Layout: inputs -> hidden (ReLU) -> outputs (linear). The hidden layer is
2 * (inputs + outputs) wide, one output per `Action`. Evaluation is a pure
function of the current weights, so a controller can be shared read-only
between worker threads during the parallel phase of a tick.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Dict, Iterator, Optional, Sequence, Tuple

import numpy as np

SENSOR_COUNT = 5
VALUES_PER_SENSOR = 4
INPUT_SIZE = SENSOR_COUNT * VALUES_PER_SENSOR

WEIGHT_LIMIT = 2.0
PERTURBATION = 0.1


class Action(IntEnum):
    NOOP = 0
    TURN_LEFT = 1
    TURN_RIGHT = 2
    FORWARD = 3


OUTPUT_SIZE = len(Action)


def hidden_size_for(input_size: int, output_size: int) -> int:
    return 2 * (input_size + output_size)


class NeuralController:
    __slots__ = ("weights_ih", "bias_h", "weights_ho", "bias_o")

    def __init__(
        self,
        weights_ih: np.ndarray,
        bias_h: np.ndarray,
        weights_ho: np.ndarray,
        bias_o: np.ndarray,
    ) -> None:
        self.weights_ih = np.asarray(weights_ih, dtype=np.float64)
        self.bias_h = np.asarray(bias_h, dtype=np.float64)
        self.weights_ho = np.asarray(weights_ho, dtype=np.float64)
        self.bias_o = np.asarray(bias_o, dtype=np.float64)
        self._check_shapes()

    def _check_shapes(self) -> None:
        if self.weights_ih.ndim != 2 or self.weights_ho.ndim != 2:
            raise ValueError("weight matrices must be two-dimensional")
        hidden, _ = self.weights_ih.shape
        outputs, hidden_ho = self.weights_ho.shape
        if hidden_ho != hidden:
            raise ValueError(
                f"hidden layer mismatch: input->hidden has {hidden} rows, hidden->output has {hidden_ho} columns"
            )
        if self.bias_h.shape != (hidden,):
            raise ValueError(f"hidden bias must have shape ({hidden},), got {self.bias_h.shape}")
        if self.bias_o.shape != (outputs,):
            raise ValueError(f"output bias must have shape ({outputs},), got {self.bias_o.shape}")

    # ---------- construction ----------
    @classmethod
    def random(
        cls,
        rng: np.random.Generator,
        input_size: int = INPUT_SIZE,
        output_size: int = OUTPUT_SIZE,
        scale: float = 1.0,
    ) -> "NeuralController":
        hidden = hidden_size_for(input_size, output_size)
        return cls(
            rng.uniform(-scale, scale, size=(hidden, input_size)),
            rng.uniform(-scale, scale, size=hidden),
            rng.uniform(-scale, scale, size=(output_size, hidden)),
            rng.uniform(-scale, scale, size=output_size),
        )

    @classmethod
    def from_seed(
        cls,
        seed: Optional[int],
        input_size: int = INPUT_SIZE,
        output_size: int = OUTPUT_SIZE,
    ) -> "NeuralController":
        return cls.random(np.random.default_rng(seed), input_size, output_size)

    def clone(self) -> "NeuralController":
        return NeuralController(
            self.weights_ih.copy(),
            self.bias_h.copy(),
            self.weights_ho.copy(),
            self.bias_o.copy(),
        )

    # ---------- shape ----------
    @property
    def input_size(self) -> int:
        return self.weights_ih.shape[1]

    @property
    def hidden_size(self) -> int:
        return self.weights_ih.shape[0]

    @property
    def output_size(self) -> int:
        return self.weights_ho.shape[0]

    def parameters(self) -> Iterator[np.ndarray]:
        yield self.weights_ih
        yield self.bias_h
        yield self.weights_ho
        yield self.bias_o

    def parameter_count(self) -> int:
        return sum(p.size for p in self.parameters())

    # ---------- inference ----------
    def forward(self, inputs: Sequence[float]) -> np.ndarray:
        x = np.asarray(inputs, dtype=np.float64)
        if x.shape != (self.input_size,):
            raise ValueError(f"expected {self.input_size} inputs, got shape {x.shape}")
        hidden = np.maximum(self.weights_ih @ x + self.bias_h, 0.0)
        return self.weights_ho @ hidden + self.bias_o

    def evaluate(self, inputs: Sequence[float]) -> Action:
        # np.argmax returns the first maximum, so ties go to the lowest action index.
        return Action(int(np.argmax(self.forward(inputs))))

    # ---------- mutation ----------
    def mutate(
        self,
        rate: float,
        rng: np.random.Generator,
        perturbation: float = PERTURBATION,
        limit: float = WEIGHT_LIMIT,
    ) -> int:
        """
        Perturb each weight and bias with probability ``rate`` by a value drawn
        uniformly from [-perturbation, perturbation], then clamp to [-limit, limit].
        Returns the number of parameters that were touched.
        """
        rate = min(1.0, max(0.0, float(rate)))
        touched = 0
        for params in self.parameters():
            mask = rng.random(params.shape) < rate
            count = int(mask.sum())
            if count == 0:
                continue
            delta = rng.uniform(-perturbation, perturbation, size=count)
            params[mask] = np.clip(params[mask] + delta, -limit, limit)
            touched += count
        return touched

    # ---------- serialization ----------
    def to_dict(self) -> Dict[str, list]:
        return {
            "weights_ih": self.weights_ih.tolist(),
            "bias_h": self.bias_h.tolist(),
            "weights_ho": self.weights_ho.tolist(),
            "bias_o": self.bias_o.tolist(),
        }

    @staticmethod
    def from_dict(d: Dict[str, list]) -> "NeuralController":
        try:
            return NeuralController(d["weights_ih"], d["bias_h"], d["weights_ho"], d["bias_o"])
        except KeyError as exc:
            raise ValueError(f"controller payload is missing {exc}") from exc

    def shape(self) -> Tuple[int, int, int]:
        return self.input_size, self.hidden_size, self.output_size

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NeuralController):
            return NotImplemented
        return all(np.array_equal(a, b) for a, b in zip(self.parameters(), other.parameters()))

    __hash__ = None  # type: ignore[assignment]
