# mlm_system/validation/compensation_plan.py
"""
Validation rules for compensation plan settings.
Ensures all settings are within acceptable ranges and that the plan cannot
pay out more than the commissionable revenue it is paid from.

All functions are pure: settings in, ValidationResult out.

Settings shape:
    {
        "matrix": {"width": 5, "depth": 9},
        "commissions": {
            "retail": 25,                      # percent
            "matrixLevels": [10, 5, 5, ...],   # percent per level
            "matchingPercentage": 10,          # percent
            "matchingLevels": 5,
            "rankBonuses": {"bronze": 100, ...}
        }
    }
"""
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from numbers import Number
from typing import Any, Dict, List, Optional


@dataclass
class ValidationResult:
    isValid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


COMPENSATION_LIMITS = {
    "matrix": {
        "minWidth": 2,
        "maxWidth": 10,
        "minDepth": 1,
        "maxDepth": 15,
        "recommendedWidth": 5,
        "recommendedDepth": 9,
        "maxRecommendedPositions": 1_000_000,
    },
    "commissions": {
        "minRate": 0,
        "maxRate": 100,
        "recommendedRetail": 25,
        "lowRetail": 10,
        "highRetail": 50,
        "maxMatrixLevels": 15,
        "highMatchingPercentage": 50,
        "recommendedMatchingPercentage": 10,
        "maxMatchingLevels": 10,
        "recommendedMatchingLevels": 5,
        "highRankBonus": 100_000,
    },
    "maxTotalPayout": 100,
    "recommendedMaxPayout": 75,
}


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _is_whole(value: Any) -> bool:
    if not _is_number(value):
        return False
    try:
        return Decimal(str(value)) == Decimal(str(value)).to_integral_value()
    except InvalidOperation:
        return False


def _dec(value: Any) -> Decimal:
    return Decimal(str(value))


def calculateTotalPositions(width: int, depth: int) -> int:
    """Total slots in a width x depth matrix: width^1 + ... + width^depth."""
    return sum(width ** level for level in range(1, depth + 1))


def validateMatrixSettings(settings: Dict[str, Any]) -> ValidationResult:
    """Validate matrix width and depth."""
    errors: List[str] = []
    warnings: List[str] = []
    limits = COMPENSATION_LIMITS["matrix"]

    width = settings.get("width")
    depth = settings.get("depth")

    if not _is_whole(width):
        errors.append("Matrix width must be a whole number")
    elif width < limits["minWidth"]:
        errors.append(f"Matrix width must be at least {limits['minWidth']}")
    elif width > limits["maxWidth"]:
        errors.append(f"Matrix width cannot exceed {limits['maxWidth']}")
    elif width > limits["recommendedWidth"]:
        warnings.append("Large matrix widths may slow down spillover calculations")

    if not _is_whole(depth):
        errors.append("Matrix depth must be a whole number")
    elif depth < limits["minDepth"]:
        errors.append(f"Matrix depth must be at least {limits['minDepth']}")
    elif depth > limits["maxDepth"]:
        errors.append(f"Matrix depth cannot exceed {limits['maxDepth']} levels")
    elif depth > limits["recommendedDepth"]:
        warnings.append("Deep matrices may have very large downlines")

    if not errors:
        totalPositions = calculateTotalPositions(int(width), int(depth))
        if totalPositions > limits["maxRecommendedPositions"]:
            warnings.append(
                f"This matrix can hold up to {totalPositions:,} distributors. "
                f"Consider reducing width or depth."
            )

    return ValidationResult(isValid=not errors, errors=errors, warnings=warnings)


def _check_rate(label: str, value: Any, errors: List[str]) -> bool:
    limits = COMPENSATION_LIMITS["commissions"]
    if not _is_number(value):
        errors.append(f"{label} must be a number")
        return False
    if value < limits["minRate"]:
        errors.append(f"{label} cannot be negative")
        return False
    if value > limits["maxRate"]:
        errors.append(f"{label} cannot exceed {limits['maxRate']}%")
        return False
    return True


def validateCommissionRates(rates: Dict[str, Any]) -> ValidationResult:
    """Validate retail, matrix, matching and rank bonus settings."""
    errors: List[str] = []
    warnings: List[str] = []
    limits = COMPENSATION_LIMITS["commissions"]

    # Retail
    retail = rates.get("retail")
    if _check_rate("Retail commission", retail, errors):
        if retail < limits["lowRetail"]:
            warnings.append("Low retail commission may not motivate distributors")
        elif retail > limits["highRetail"]:
            warnings.append("High retail commission may impact profitability")

    # Matrix levels
    matrixLevels = rates.get("matrixLevels")
    if not isinstance(matrixLevels, (list, tuple)):
        errors.append("Matrix levels must be a list")
    else:
        if len(matrixLevels) == 0:
            errors.append("At least one matrix level is required")
        if len(matrixLevels) > limits["maxMatrixLevels"]:
            errors.append(f"Cannot have more than {limits['maxMatrixLevels']} matrix levels")

        valid_levels = True
        for index, percentage in enumerate(matrixLevels):
            valid_levels &= _check_rate(f"Matrix level {index + 1} percentage", percentage, errors)

        if valid_levels and matrixLevels:
            totalMatrixPayout = sum(_dec(p) for p in matrixLevels)
            if totalMatrixPayout > COMPENSATION_LIMITS["maxTotalPayout"]:
                errors.append(
                    f"Total matrix payout ({totalMatrixPayout}%) exceeds 100% - this is unsustainable"
                )
            elif totalMatrixPayout > COMPENSATION_LIMITS["recommendedMaxPayout"]:
                warnings.append(
                    f"High total matrix payout ({totalMatrixPayout}%) may impact profitability"
                )

    # Matching
    matchingLevels = rates.get("matchingLevels")
    if not _is_whole(matchingLevels):
        errors.append("Matching levels must be a whole number")
    elif matchingLevels < 0:
        errors.append("Matching levels cannot be negative")
    elif matchingLevels > limits["maxMatchingLevels"]:
        errors.append(f"Matching levels cannot exceed {limits['maxMatchingLevels']}")

    matchingPercentage = rates.get("matchingPercentage")
    if _check_rate("Matching percentage", matchingPercentage, errors):
        if matchingPercentage > limits["highMatchingPercentage"]:
            warnings.append("High matching percentage may impact profitability")

    # Rank bonuses
    rankBonuses = rates.get("rankBonuses", {})
    if not isinstance(rankBonuses, dict):
        errors.append("Rank bonuses must be a mapping of rank to amount")
    else:
        for rank, amount in rankBonuses.items():
            if not _is_number(amount):
                errors.append(f"Rank bonus for {rank} must be a number")
            elif amount < 0:
                errors.append(f"Rank bonus for {rank} cannot be negative")
            elif amount > limits["highRankBonus"]:
                warnings.append(f"Very high rank bonus for {rank} (${amount:,})")

    return ValidationResult(isValid=not errors, errors=errors, warnings=warnings)


def calculateMaxPayout(settings: Dict[str, Any]) -> Decimal:
    """
    Theoretical maximum payout as a percentage of commissionable revenue:
    retail + sum(matrix levels) + matching% x matching levels.
    """
    commissions = settings["commissions"]
    retail = _dec(commissions["retail"])
    matrix = sum((_dec(p) for p in commissions["matrixLevels"]), Decimal("0"))
    matching = _dec(commissions["matchingPercentage"]) * _dec(commissions["matchingLevels"])
    return retail + matrix + matching


def validateCompensationPlan(settings: Dict[str, Any]) -> ValidationResult:
    """
    Validate a complete compensation plan.

    A plan whose theoretical payout exceeds 100% of commissionable revenue is
    rejected; above 75% it passes with a warning.
    """
    matrixValidation = validateMatrixSettings(settings.get("matrix", {}))
    commissionValidation = validateCommissionRates(settings.get("commissions", {}))

    errors = matrixValidation.errors + commissionValidation.errors
    warnings = matrixValidation.warnings + commissionValidation.warnings

    # Totals are only meaningful when every individual value parsed
    if errors:
        return ValidationResult(isValid=False, errors=errors, warnings=warnings)

    depth = settings["matrix"]["depth"]
    levelCount = len(settings["commissions"]["matrixLevels"])
    if levelCount != depth:
        warnings.append(
            f"Matrix depth ({depth}) doesn't match number of commission levels ({levelCount})"
        )

    totalPayout = calculateMaxPayout(settings)

    if totalPayout > COMPENSATION_LIMITS["maxTotalPayout"]:
        errors.append(
            f"Total potential payout ({totalPayout:.2f}%) exceeds 100% - "
            f"this plan is mathematically impossible"
        )
    elif totalPayout > COMPENSATION_LIMITS["recommendedMaxPayout"]:
        warnings.append(
            f"High total payout percentage ({totalPayout:.2f}%) may not be sustainable"
        )

    return ValidationResult(isValid=not errors, errors=errors, warnings=warnings)


def firstError(result: ValidationResult) -> Optional[str]:
    return result.errors[0] if result.errors else None
