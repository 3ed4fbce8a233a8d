"""
Sampling strategies for token generation

GreedySampler is the default: highest logit wins, exact ties go to the
lowest vocabulary index. StochasticSampler applies repeat penalty,
temperature, top-k and top-p before drawing from the distribution.
"""

from typing import Optional, Sequence

import numpy as np

from edge_serving.config_loader import InferenceConfig


class Sampler:
    """Picks the next token id from a logits vector"""

    def sample(self, logits: np.ndarray, previous_tokens: Sequence[int]) -> int:
        raise NotImplementedError


class GreedySampler(Sampler):
    """Argmax sampling (np.argmax returns the first, i.e. lowest, index on ties)"""

    def sample(self, logits: np.ndarray, previous_tokens: Sequence[int]) -> int:
        return int(np.argmax(logits))


def apply_repeat_penalty(logits: np.ndarray, previous_tokens: Sequence[int], penalty: float) -> np.ndarray:
    """Apply repetition penalty."""
    if penalty == 1.0 or not previous_tokens:
        return logits
    logits = logits.copy()
    seen = np.unique(np.asarray(previous_tokens, dtype=np.int64))
    seen = seen[(seen >= 0) & (seen < logits.shape[-1])]
    values = logits[seen]
    logits[seen] = np.where(values > 0, values / penalty, values * penalty)
    return logits


def top_k_filter(logits: np.ndarray, k: int) -> np.ndarray:
    """Top-k filtering."""
    if k <= 0 or k >= logits.shape[-1]:
        return logits
    kth = np.partition(logits, -k)[-k]
    return np.where(logits < kth, -np.inf, logits)


def top_p_filter(logits: np.ndarray, p: float) -> np.ndarray:
    """Top-p (nucleus) filtering."""
    if p >= 1.0:
        return logits
    order = np.argsort(-logits, kind="stable")
    sorted_logits = logits[order]
    probs = _softmax(sorted_logits)
    cumulative = np.cumsum(probs)

    # Keep the smallest prefix whose mass reaches p (always at least one token)
    remove = cumulative > p
    remove[1:] = remove[:-1].copy()
    remove[0] = False

    filtered = logits.copy()
    filtered[order[remove]] = -np.inf
    return filtered


def _softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / exp.sum()


class StochasticSampler(Sampler):
    """Temperature / top-k / top-p sampling with a seedable generator"""

    def __init__(
        self,
        temperature: float = 0.8,
        top_k: int = 40,
        top_p: float = 0.9,
        repeat_penalty: float = 1.1,
        seed: Optional[int] = None,
    ):
        self.temperature = temperature
        self.top_k = top_k
        self.top_p = top_p
        self.repeat_penalty = repeat_penalty
        self._rng = np.random.default_rng(seed)

    def sample(self, logits: np.ndarray, previous_tokens: Sequence[int]) -> int:
        logits = np.asarray(logits, dtype=np.float64)
        logits = apply_repeat_penalty(logits, previous_tokens, self.repeat_penalty)

        # Temperature 0 degenerates to greedy
        if self.temperature == 0.0:
            return int(np.argmax(logits))

        logits = logits / self.temperature
        logits = top_k_filter(logits, self.top_k)
        logits = top_p_filter(logits, self.top_p)

        probs = _softmax(logits)
        return int(self._rng.choice(probs.shape[-1], p=probs))


def make_sampler(config: InferenceConfig) -> Sampler:
    """Build the sampler named by config.sampler"""
    if config.sampler == "greedy":
        return GreedySampler()
    if config.sampler == "stochastic":
        return StochasticSampler(
            temperature=config.temperature,
            top_k=config.top_k,
            top_p=config.top_p,
            repeat_penalty=config.repeat_penalty,
            seed=config.seed,
        )
    raise ValueError(f"Unknown sampler: {config.sampler}")
