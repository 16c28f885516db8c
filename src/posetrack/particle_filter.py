from __future__ import annotations

"""Adaptive coordinate particle filter with separated transition, observation and resampling components."""

import logging
import math
from typing import Callable, Sequence

import numpy as np

from .config import TrackerParameters
from .model import FilterStepResult, ObservationModel, Resampler, TransitionModel
from .sampling import block_columns, validate_sampling_blocks
from .vision import weighted_pose_mean

logger = logging.getLogger("posetrack.filter")

StateEstimator = Callable[[np.ndarray, np.ndarray], np.ndarray]


def normalize_log_weights(log_weights: np.ndarray) -> np.ndarray:
    """Shift log-weights so that they exponentiate to a distribution."""
    log_weights = np.asarray(log_weights, dtype=np.float64)
    if log_weights.size == 0:
        return log_weights
    finite = np.isfinite(log_weights)
    if not np.any(finite):
        return np.full(log_weights.shape, -math.log(log_weights.size))
    peak = float(np.max(log_weights[finite]))
    log_total = peak + math.log(float(np.sum(np.exp(log_weights[finite] - peak))))
    return np.where(finite, log_weights - log_total, -np.inf)


def kl_divergence(log_posterior: np.ndarray, log_prior: np.ndarray) -> float:
    """KL(posterior || prior) of two normalized log-weight vectors over the same particles."""
    posterior = np.exp(log_posterior)
    mask = posterior > 0.0
    if not np.any(mask):
        return 0.0
    return float(np.sum(posterior[mask] * (log_posterior[mask] - log_prior[mask])))


def effective_sample_size(log_weights: np.ndarray) -> float:
    weights = np.exp(log_weights)
    denominator = float(np.sum(weights**2))
    if denominator <= 0.0:
        return 0.0
    return 1.0 / denominator


def _normalized_weights(weights: np.ndarray) -> np.ndarray:
    raw = np.maximum(np.asarray(weights, dtype=np.float64), 0.0)
    total = float(raw.sum())
    if total <= 0.0:
        return np.full(len(raw), 1.0 / len(raw), dtype=np.float64)
    return raw / total


class SystematicResampler(Resampler):
    def resample(self, weights: np.ndarray, count: int, rng: np.random.Generator) -> np.ndarray:
        if count <= 0 or len(weights) == 0:
            return np.empty((0,), dtype=np.int64)

        cumulative = np.cumsum(_normalized_weights(weights))
        step = 1.0 / count
        points = rng.random() * step + step * np.arange(count, dtype=np.float64)
        indices = np.searchsorted(cumulative, points, side="left")
        return np.clip(indices, 0, len(weights) - 1).astype(np.int64)


class StratifiedResampler(Resampler):
    def resample(self, weights: np.ndarray, count: int, rng: np.random.Generator) -> np.ndarray:
        if count <= 0 or len(weights) == 0:
            return np.empty((0,), dtype=np.int64)

        cumulative = np.cumsum(_normalized_weights(weights))
        points = (np.arange(count, dtype=np.float64) + rng.random(count)) / count
        indices = np.searchsorted(cumulative, points, side="left")
        return np.clip(indices, 0, len(weights) - 1).astype(np.int64)


class MultinomialResampler(Resampler):
    def resample(self, weights: np.ndarray, count: int, rng: np.random.Generator) -> np.ndarray:
        if count <= 0 or len(weights) == 0:
            return np.empty((0,), dtype=np.int64)

        return rng.choice(len(weights), size=count, p=_normalized_weights(weights)).astype(np.int64)


def build_resampler(name: str) -> Resampler:
    normalized = name.strip().lower()
    if normalized == "systematic":
        return SystematicResampler()
    if normalized == "stratified":
        return StratifiedResampler()
    if normalized == "multinomial":
        return MultinomialResampler()
    raise ValueError("Unknown resampler. Expected one of: systematic, stratified, multinomial")


class AdaptiveCoordinateParticleFilter:
    """Block-coordinate particle filter whose population grows where the update is informative.

    Each filter step walks the sampling blocks in order. A block's dimensions are
    perturbed while the others keep their values, particles are reweighted by the
    change in log-likelihood, and the population is resampled. When the KL
    divergence between the weights before and after a block's update exceeds
    ``max_kl_divergence`` the population grows by ``sample_growth_factor`` (up to
    ``max_sample_count``); otherwise it is resampled only when the effective
    sample size falls below ``resample_ess_ratio`` of the population. After a
    step without growth the population shrinks back toward ``evaluation_count``.
    """

    def __init__(
        self,
        *,
        transition_model: TransitionModel,
        observation_model: ObservationModel,
        sampling_blocks: Sequence[Sequence[int]],
        parameters: TrackerParameters,
        resampler: Resampler | None = None,
        rng: np.random.Generator | None = None,
        sample_growth_factor: float = 2.0,
        resample_ess_ratio: float = 0.5,
        estimator: StateEstimator | None = None,
    ) -> None:
        validate_sampling_blocks(sampling_blocks, transition_model.state_dimension)
        if sample_growth_factor <= 1.0:
            raise ValueError("sample_growth_factor must be > 1")
        if not 0.0 < resample_ess_ratio <= 1.0:
            raise ValueError("resample_ess_ratio must be in (0, 1]")

        self._transition_model = transition_model
        self._observation_model = observation_model
        self._sampling_blocks = tuple(sampling_blocks)
        self._block_columns = tuple(block_columns(block) for block in self._sampling_blocks)
        self._parameters = parameters
        self._resampler = resampler or SystematicResampler()
        self._rng = rng or np.random.default_rng()
        self._growth_factor = float(sample_growth_factor)
        self._ess_ratio = float(resample_ess_ratio)
        self._estimator = estimator or weighted_pose_mean

        dimension = transition_model.state_dimension
        self._states = np.empty((0, dimension), dtype=np.float64)
        self._log_weights = np.empty((0,), dtype=np.float64)
        self._occlusion_indices = np.empty((0,), dtype=np.int64)
        self._grew_last_step = False

    @property
    def transition_model(self) -> TransitionModel:
        return self._transition_model

    @property
    def observation_model(self) -> ObservationModel:
        return self._observation_model

    @property
    def sampling_blocks(self) -> tuple[Sequence[int], ...]:
        return self._sampling_blocks

    @property
    def parameters(self) -> TrackerParameters:
        return self._parameters

    @property
    def particles(self) -> np.ndarray:
        return self._states

    @property
    def weights(self) -> np.ndarray:
        return np.exp(self._log_weights)

    @property
    def sample_count(self) -> int:
        return len(self._states)

    def _clamp_count(self, count: int) -> int:
        return int(
            min(self._parameters.max_sample_count, max(self._parameters.evaluation_count, count))
        )

    def set_particles(self, states: np.ndarray) -> None:
        """Replace the population; sizes outside the bounds are resampled into them."""
        states = np.asarray(states, dtype=np.float64)
        if states.ndim != 2 or states.shape[1] != self._transition_model.state_dimension:
            raise ValueError(f"particles must be (N, {self._transition_model.state_dimension})")
        if len(states) == 0:
            raise ValueError("at least one particle is required")

        count = self._clamp_count(len(states))
        if count != len(states):
            indices = self._resampler.resample(np.ones(len(states)), count, self._rng)
            states = states[indices]
        self._states = np.array(states, copy=True)
        self._log_weights = np.full(count, -math.log(count))
        self._occlusion_indices = np.zeros(count, dtype=np.int64)
        self._observation_model.reset_occlusions()
        self._grew_last_step = False

    def _resample(self, count: int, *arrays: np.ndarray) -> tuple[np.ndarray, ...]:
        ancestors = self._resampler.resample(np.exp(self._log_weights), count, self._rng)
        self._states = self._states[ancestors]
        self._occlusion_indices = self._occlusion_indices[ancestors]
        self._log_weights = np.full(count, -math.log(count))
        return tuple(array[ancestors] for array in arrays)

    def filter(self, observation: np.ndarray, control: np.ndarray | None = None) -> FilterStepResult:
        if self.sample_count == 0:
            raise ValueError("Cannot filter without particles; call set_particles first")

        self._observation_model.set_observation(observation)

        resample_count = 0
        if not self._grew_last_step and self.sample_count > self._parameters.evaluation_count:
            shrunk = self._clamp_count(int(self.sample_count / self._growth_factor))
            self._resample(shrunk)
            resample_count += 1
            logger.debug(f"population shrunk to {shrunk} particles")

        previous_states = self._states
        noise = np.zeros_like(previous_states)
        block_log_likelihoods = np.zeros(self.sample_count, dtype=np.float64)
        sample_counts: list[int] = []
        kl_values: list[float] = []
        grew = False
        last_block = len(self._sampling_blocks) - 1

        for block_index, columns in enumerate(self._block_columns):
            sample_counts.append(self.sample_count)
            noise[:, columns] = self._rng.standard_normal(noise[:, columns].shape)
            self._states = self._transition_model.predict(previous_states, noise, control)

            new_log_likelihoods = self._observation_model.log_likelihoods(
                self._states,
                self._occlusion_indices,
                commit=block_index == last_block,
            )
            if block_index == last_block:
                self._occlusion_indices = np.arange(self.sample_count, dtype=np.int64)

            prior_log_weights = self._log_weights
            self._log_weights = normalize_log_weights(
                prior_log_weights + new_log_likelihoods - block_log_likelihoods
            )
            block_log_likelihoods = new_log_likelihoods

            divergence = kl_divergence(self._log_weights, prior_log_weights)
            kl_values.append(divergence)
            count = self.sample_count
            if divergence > self._parameters.max_kl_divergence:
                target = self._clamp_count(max(count + 1, math.ceil(count * self._growth_factor)))
                previous_states, noise, block_log_likelihoods = self._resample(
                    target, previous_states, noise, block_log_likelihoods
                )
                resample_count += 1
                grew = grew or target > count
                if target > count:
                    logger.debug(
                        f"block {block_index}: KL {divergence:.3f} > "
                        f"{self._parameters.max_kl_divergence:.3f}, population {count} -> {target}"
                    )
            elif effective_sample_size(self._log_weights) < self._ess_ratio * count:
                previous_states, noise, block_log_likelihoods = self._resample(
                    count, previous_states, noise, block_log_likelihoods
                )
                resample_count += 1

        self._grew_last_step = grew
        return FilterStepResult(
            mean_state=self.estimate(),
            sample_counts=tuple(sample_counts),
            kl_divergences=tuple(kl_values),
            resample_count=resample_count,
            effective_sample_size=effective_sample_size(self._log_weights),
        )

    def estimate(self) -> np.ndarray:
        if self.sample_count == 0:
            raise ValueError("Cannot estimate state without particles")
        return self._estimator(self._states, np.exp(self._log_weights))
