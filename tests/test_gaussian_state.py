import dataclasses

import pytest
import torch

from torch_dkf import GaussianState, InvariantViolation, PendingPosterior, StateEstimate


def _spd_matrix(dim: int) -> torch.Tensor:
    # Construct a symmetric positive definite covariance.
    cov = torch.randn(dim, dim)
    return cov @ cov.mT + 1e-2 * torch.eye(dim)


def test_clone_is_deep_copy():
    s = GaussianState(torch.randn(4, 1), _spd_matrix(4))
    c = s.clone()

    assert c is not s
    assert torch.allclose(c.mean, s.mean)
    assert torch.allclose(c.covariance, s.covariance)

    # Mutate original, clone must not change
    s.mean.add_(1.0)
    s.covariance.mul_(2.0)
    assert not torch.allclose(c.mean, s.mean)
    assert not torch.allclose(c.covariance, s.covariance)


def test_to_dtype():
    s = GaussianState(torch.randn(3, 1), _spd_matrix(3))

    s64 = s.to(torch.float64)
    assert s64.mean.dtype == torch.float64
    assert s64.covariance.dtype == torch.float64

    s32 = s64.to(torch.float32)
    assert s32.mean.dtype == torch.float32
    assert s32.covariance.dtype == torch.float32


def test_pending_posterior_rejects_missing_parts():
    with pytest.raises(InvariantViolation):
        PendingPosterior(torch.zeros(2, 1), None)  # type: ignore[arg-type]

    with pytest.raises(InvariantViolation):
        PendingPosterior(None, torch.eye(2))  # type: ignore[arg-type]

    # Invariant violations are assertion errors: they must not be silently caught as value errors
    with pytest.raises(AssertionError):
        PendingPosterior(None, None)  # type: ignore[arg-type]


def test_pending_posterior_cannot_lose_a_part():
    pending = PendingPosterior(torch.zeros(2, 1), torch.eye(2))

    with pytest.raises(dataclasses.FrozenInstanceError):
        pending.mean = None  # type: ignore[misc]

    with pytest.raises(dataclasses.FrozenInstanceError):
        pending.correction = None  # type: ignore[misc]

    assert pending.mean is not None
    assert pending.correction is not None


def test_estimate_without_posterior():
    prior = GaussianState(torch.randn(3, 1), _spd_matrix(3))
    estimate = StateEstimate(prior)

    assert not estimate.has_posterior
    assert estimate.posterior is None
    assert estimate.mean is prior.mean


def test_estimate_posterior_view_is_finalized_and_symmetric():
    prior = GaussianState(torch.randn(3, 1), _spd_matrix(3))
    correction = torch.eye(3) - 0.1 * torch.randn(3, 3)  # Not symmetric
    estimate = StateEstimate(prior, PendingPosterior(torch.randn(3, 1), correction))

    posterior = estimate.posterior

    assert estimate.has_posterior
    assert posterior is not None
    assert estimate.mean is estimate.pending.mean
    assert torch.allclose(posterior.covariance, posterior.covariance.mT)

    expected = correction @ prior.covariance
    assert torch.allclose(posterior.covariance, (expected + expected.mT) / 2)

    # The view does not modify the estimate
    assert estimate.pending.correction is correction


def test_estimate_clone_and_to():
    prior = GaussianState(torch.randn(2, 1), _spd_matrix(2))
    estimate = StateEstimate(prior, PendingPosterior(torch.randn(2, 1), torch.eye(2)))

    cloned = estimate.clone()
    estimate.pending.mean.add_(1.0)
    assert not torch.allclose(cloned.pending.mean, estimate.pending.mean)
    assert torch.allclose(cloned.prior.mean, estimate.prior.mean)

    converted = estimate.to(torch.float64)
    assert converted.prior.mean.dtype == torch.float64
    assert converted.pending.correction.dtype == torch.float64

    assert StateEstimate(prior).to(torch.float64).pending is None
