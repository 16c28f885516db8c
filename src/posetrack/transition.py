from __future__ import annotations

"""State transition models and their factory."""

import math

import numpy as np

from .config import BrownianTransitionParameters, ObjectTransitionParameters, TrackerConfig
from .model import POSE_DIMENSION, TransitionModel


def _check_dimensions(state_dimension: int, input_dimension: int) -> None:
    if state_dimension <= 0 or state_dimension % POSE_DIMENSION != 0:
        raise ValueError("state_dimension must be a positive multiple of 6")
    if input_dimension not in (0, state_dimension):
        raise ValueError("input_dimension must be 0 or equal to state_dimension")


class _GaussianRigidBodyTransition(TransitionModel):
    def __init__(self, *, noise_scale: np.ndarray, state_dimension: int, input_dimension: int) -> None:
        _check_dimensions(state_dimension, input_dimension)
        self._state_dimension = state_dimension
        self._input_dimension = input_dimension
        self._noise_scale = np.tile(noise_scale, state_dimension // POSE_DIMENSION)

    @property
    def state_dimension(self) -> int:
        return self._state_dimension

    @property
    def input_dimension(self) -> int:
        return self._input_dimension

    @property
    def noise_scale(self) -> np.ndarray:
        return self._noise_scale

    def _check_shapes(self, states: np.ndarray, noise: np.ndarray) -> None:
        if states.ndim != 2 or states.shape[1] != self._state_dimension:
            raise ValueError(f"states must be (N, {self._state_dimension})")
        if noise.shape != states.shape:
            raise ValueError("noise must match the shape of states")


class BrownianMotionModel(_GaussianRigidBodyTransition):
    """Random walk on position and rotation vector; ignores the control input."""

    def __init__(
        self,
        params: BrownianTransitionParameters,
        *,
        state_dimension: int,
        input_dimension: int = 0,
    ) -> None:
        scale = math.sqrt(params.delta_time)
        super().__init__(
            noise_scale=scale
            * np.asarray([params.linear_sigma] * 3 + [params.angular_sigma] * 3, dtype=np.float64),
            state_dimension=state_dimension,
            input_dimension=input_dimension,
        )

    def predict(
        self,
        states: np.ndarray,
        noise: np.ndarray,
        control: np.ndarray | None = None,
    ) -> np.ndarray:
        del control
        self._check_shapes(states, noise)
        return states + noise * self.noise_scale[None, :]


class ObjectTransitionModel(_GaussianRigidBodyTransition):
    """Damped constant-velocity model driven by the last estimated displacement."""

    def __init__(
        self,
        params: ObjectTransitionParameters,
        *,
        state_dimension: int,
        input_dimension: int,
    ) -> None:
        scale = math.sqrt(params.delta_time)
        super().__init__(
            noise_scale=scale
            * np.asarray(
                [
                    params.linear_sigma_x,
                    params.linear_sigma_y,
                    params.linear_sigma_z,
                    params.angular_sigma_x,
                    params.angular_sigma_y,
                    params.angular_sigma_z,
                ],
                dtype=np.float64,
            ),
            state_dimension=state_dimension,
            input_dimension=input_dimension,
        )
        self._velocity_factor = params.velocity_factor

    def predict(
        self,
        states: np.ndarray,
        noise: np.ndarray,
        control: np.ndarray | None = None,
    ) -> np.ndarray:
        self._check_shapes(states, noise)
        next_states = states + noise * self.noise_scale[None, :]
        if control is not None and self.input_dimension > 0:
            displacement = np.asarray(control, dtype=np.float64)
            if displacement.shape != (self.input_dimension,):
                raise ValueError(f"control must have {self.input_dimension} entries")
            next_states = next_states + self._velocity_factor * displacement[None, :]
        return next_states


def create_object_transition_model(
    params: ObjectTransitionParameters,
    state_dimension: int,
    input_dimension: int,
) -> ObjectTransitionModel:
    return ObjectTransitionModel(
        params,
        state_dimension=state_dimension,
        input_dimension=input_dimension,
    )


def create_brownian_transition_model(
    params: BrownianTransitionParameters,
    state_dimension: int,
    input_dimension: int,
) -> BrownianMotionModel:
    return BrownianMotionModel(
        params,
        state_dimension=state_dimension,
        input_dimension=input_dimension,
    )


def create_transition_model(
    config: TrackerConfig,
    state_dimension: int,
    input_dimension: int,
) -> TransitionModel:
    if config.active_transition == "brownian":
        return create_brownian_transition_model(
            config.brownian_transition, state_dimension, input_dimension
        )
    return create_object_transition_model(
        config.object_transition, state_dimension, input_dimension
    )
