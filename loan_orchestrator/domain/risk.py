"""Risk classifier - maps a numeric risk score to loan terms"""

from typing import Iterable, List, Optional, Sequence
from loan_orchestrator.domain.models import RiskBand, RiskProfile


def bands_from_config(band_configs: Iterable) -> List[RiskBand]:
    """Build classifier bands from Settings.risk_bands entries"""
    bands = [
        RiskBand(
            label=b.label,
            max_score=b.max_score,
            interest_rate=b.interest_rate,
            collateral_ratio=b.collateral_ratio,
            max_term_days=b.max_term_days,
            max_amount=b.max_amount,
            eligible=b.eligible,
        )
        for b in band_configs
    ]
    validate_bands(bands)
    return bands


def validate_bands(bands: Sequence[RiskBand]) -> None:
    """
    Bands must be non-empty, strictly ascending by max_score, and end with
    an open-ended band so every score is covered.
    """
    if not bands:
        raise ValueError("At least one risk band is required")
    if bands[-1].max_score is not None:
        raise ValueError("Last risk band must be open-ended (max_score=None)")

    bounded = [b.max_score for b in bands[:-1]]
    if any(bound is None for bound in bounded):
        raise ValueError("Only the last risk band may be open-ended")
    if any(lo >= hi for lo, hi in zip(bounded, bounded[1:])):
        raise ValueError("Risk band bounds must be strictly ascending")


def default_bands() -> List[RiskBand]:
    from loan_orchestrator.config import DEFAULT_RISK_BANDS

    return bands_from_config(DEFAULT_RISK_BANDS)


def classify(score: float, bands: Optional[Sequence[RiskBand]] = None) -> RiskProfile:
    """
    Map a risk score to a RiskProfile.

    Lower scores are safer. Default bands (score expected in [0, 100]):
    - <= 36.2: Very Low Risk  (12%, 60% collateral, 90 days, 1000)
    - <= 44.5: Low Risk       (18%, 70% collateral, 60 days, 750)
    - <= 56.5: Medium Risk    (25%, 80% collateral, 45 days, 500)
    - <= 74.7: High Risk      (35%, 90% collateral, 30 days, 300)
    - above:   Very High Risk (not eligible)
    """
    if bands is None:
        bands = default_bands()

    band = next(b for b in bands if b.max_score is None or score <= b.max_score)

    return RiskProfile(
        category=band.label,
        score=score,
        interest_rate=band.interest_rate,
        collateral_ratio=band.collateral_ratio,
        max_term_days=band.max_term_days,
        max_amount=band.max_amount,
        eligible=band.eligible,
    )
