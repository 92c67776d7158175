"""
Declarative additive model specifications

An AdditiveModelSpec names a response, a list of smooth terms and a residual
correlation structure; it says nothing about how the model is fitted. The
ModelSpecBuilder assembles one term at a time and validates the result:

    spec = (
        ModelSpecBuilder("PP")
        .cyclic("insp_rel_index", k=10, knots=(0, 1))
        .smooth("time", k=10)
        .build(columns=beats.columns)
    )

Basis family tags follow the usual GAM vocabulary: "cc"/"cp" periodic,
"cr"/"ps"/"tp" non-periodic, "ad" adaptive (with an explicit penalty basis).
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from hemolib.errors import ValidationError

PERIODIC_BASES = ("cc", "cp")
NONPERIODIC_BASES = ("cr", "ps", "tp")
ADAPTIVE_BASIS = "ad"
FITTING_METHODS = ("auto", "REML", "fREML")
MIN_BASIS_DIM = 4


def is_periodic(bs: str) -> bool:
    return bs in PERIODIC_BASES


@dataclass
class SmoothTerm:
    """One smooth component of an additive model"""

    variables: Tuple[str, ...]
    bs: Union[str, Tuple[str, ...]] = "cr"
    k: Union[int, Tuple[int, ...]] = 10
    knots: Dict[str, Tuple[float, ...]] = field(default_factory=dict)
    by: Optional[str] = None
    sp: Optional[Tuple[float, ...]] = None  # fixed smoothing parameters
    penalty_bs: Optional[str] = None  # adaptive terms only
    penalty_k: Optional[int] = None  # adaptive terms only
    interaction: bool = False  # tensor interaction (ti) term

    @property
    def label(self) -> str:
        prefix = "ti" if self.interaction else "s"
        label = f"{prefix}({','.join(self.variables)})"
        if self.by is not None:
            label += f":{self.by}"
        return label

    @property
    def n_penalties(self) -> int:
        if self.interaction:
            return len(self.variables)
        if self.bs == ADAPTIVE_BASIS:
            return int(self.penalty_k or 0)
        return 1

    @property
    def margins(self) -> List[Tuple[str, str, int]]:
        """(variable, basis, k) per margin; one margin for univariate terms"""
        if self.interaction:
            return list(zip(self.variables, self.bs, self.k))
        return [(self.variables[0], self.bs, self.k)]


@dataclass
class CorrelationStructure:
    """Residual correlation: 'none' or 'ar1' with segment start markers"""

    kind: str = "none"
    rho: float = 0.0
    start_column: Optional[str] = None  # boolean column flagging segment starts

    @property
    def is_ar1(self) -> bool:
        return self.kind == "ar1" and self.rho != 0.0


@dataclass
class AdditiveModelSpec:
    response: str
    terms: List[SmoothTerm] = field(default_factory=list)
    correlation: CorrelationStructure = field(default_factory=CorrelationStructure)
    method: str = "auto"

    @property
    def labels(self) -> List[str]:
        return [term.label for term in self.terms]

    def variables(self) -> List[str]:
        """Every data column the model reads (response included)"""
        names = [self.response]
        for term in self.terms:
            names.extend(term.variables)
            if term.by is not None:
                names.append(term.by)
        if self.correlation.start_column:
            names.append(self.correlation.start_column)
        return list(dict.fromkeys(names))

    def covariates(self) -> List[str]:
        """Columns needed to predict (no response, no AR markers)"""
        names = []
        for term in self.terms:
            names.extend(term.variables)
            if term.by is not None:
                names.append(term.by)
        return list(dict.fromkeys(names))

    def term(self, label: str) -> SmoothTerm:
        for term in self.terms:
            if term.label == label:
                return term
        raise KeyError(f"No term '{label}' in model (terms: {self.labels})")


def _validate_knots(term: SmoothTerm) -> None:
    margins = {var: bs for var, bs, _ in term.margins}
    for var, knots in term.knots.items():
        if var not in margins:
            raise ValidationError(
                f"{term.label}: knots given for '{var}', which the term does not use"
            )
        if len(knots) != 2:
            kind = "periodic" if is_periodic(margins[var]) else "smooth"
            raise ValidationError(
                f"{term.label}: {kind} term on '{var}' needs exactly two boundary "
                f"knots, got {len(knots)}"
            )
        if not knots[0] < knots[1]:
            raise ValidationError(
                f"{term.label}: boundary knots for '{var}' must be increasing"
            )


def _validate_term(term: SmoothTerm) -> None:
    if term.interaction:
        if len(term.variables) != 2:
            raise ValidationError(
                f"{term.label}: tensor interaction needs exactly two variables, "
                f"got {len(term.variables)}"
            )
        if (
            not isinstance(term.bs, tuple)
            or not isinstance(term.k, tuple)
            or len(term.bs) != 2
            or len(term.k) != 2
        ):
            raise ValidationError(
                f"{term.label}: tensor interaction needs one basis and one k per variable"
            )
        if len(set(term.variables)) != 2:
            raise ValidationError(f"{term.label}: tensor margins must differ")
    else:
        if len(term.variables) != 1:
            raise ValidationError(
                f"{term.label}: basis '{term.bs}' takes one variable, "
                f"got {len(term.variables)} (use a tensor term for two)"
            )
        if not isinstance(term.bs, str) or not isinstance(term.k, int):
            raise ValidationError(f"{term.label}: expected a single basis and k")

    for var, bs, k in term.margins:
        allowed = PERIODIC_BASES + NONPERIODIC_BASES
        if not term.interaction:
            allowed = allowed + (ADAPTIVE_BASIS,)
        if bs not in allowed:
            raise ValidationError(f"{term.label}: unknown basis '{bs}' for '{var}'")
        if k < MIN_BASIS_DIM:
            raise ValidationError(
                f"{term.label}: k={k} for '{var}' is below the minimum {MIN_BASIS_DIM}"
            )

    if term.bs == ADAPTIVE_BASIS:
        if term.penalty_bs is None:
            raise ValidationError(
                f"{term.label}: adaptive smooth needs an explicit penalty basis family"
            )
        if term.penalty_bs not in PERIODIC_BASES + NONPERIODIC_BASES:
            raise ValidationError(
                f"{term.label}: unknown penalty basis '{term.penalty_bs}'"
            )
        if term.penalty_k is None or term.penalty_k < MIN_BASIS_DIM:
            raise ValidationError(
                f"{term.label}: penalty resolution m must be at least {MIN_BASIS_DIM}"
            )
        if term.penalty_k >= term.k:
            raise ValidationError(
                f"{term.label}: penalty resolution m={term.penalty_k} must be "
                f"smaller than (and distinct from) k={term.k}"
            )
    elif term.penalty_bs is not None or term.penalty_k is not None:
        raise ValidationError(
            f"{term.label}: penalty basis settings only apply to adaptive smooths"
        )

    _validate_knots(term)

    if term.sp is not None:
        if len(term.sp) != term.n_penalties:
            raise ValidationError(
                f"{term.label}: expected {term.n_penalties} smoothing parameter(s), "
                f"got {len(term.sp)}"
            )
        if any(not s > 0 for s in term.sp):
            raise ValidationError(f"{term.label}: smoothing parameters must be > 0")

    if term.by is not None and term.by in term.variables:
        raise ValidationError(
            f"{term.label}: grouping factor cannot also be a smooth variable"
        )


def validate_spec(
    spec: AdditiveModelSpec, columns: Optional[Iterable[str]] = None
) -> AdditiveModelSpec:
    """
    Check a specification for internal consistency and, when data columns are
    given, that every referenced variable exists.

    Raises:
        ValidationError: On the first problem found
    """
    if not spec.response:
        raise ValidationError("A response variable is required")
    if not spec.terms:
        raise ValidationError("The model needs at least one smooth term")
    if spec.method not in FITTING_METHODS:
        raise ValidationError(
            f"Unknown fitting method '{spec.method}' (choose from {FITTING_METHODS})"
        )

    seen = set()
    for term in spec.terms:
        _validate_term(term)
        if term.label in seen:
            raise ValidationError(f"Duplicate term {term.label}")
        seen.add(term.label)
        if spec.response in term.variables:
            raise ValidationError(f"{term.label}: response used as a covariate")

    corr = spec.correlation
    if corr.kind not in ("none", "ar1"):
        raise ValidationError(f"Unknown correlation structure '{corr.kind}'")
    if corr.kind == "ar1" and not -1.0 < corr.rho < 1.0:
        raise ValidationError(f"AR(1) coefficient must lie in (-1, 1), got {corr.rho}")

    if columns is not None:
        available = set(columns)
        missing = [name for name in spec.variables() if name not in available]
        if missing:
            raise ValidationError(f"Variables not found in data: {missing}")

    return spec


def _as_sp(sp: Union[None, float, Sequence[float]]) -> Optional[Tuple[float, ...]]:
    if sp is None:
        return None
    if isinstance(sp, (int, float)):
        return (float(sp),)
    return tuple(float(s) for s in sp)


def _as_knots(
    variables: Sequence[str], knots
) -> Dict[str, Tuple[float, ...]]:
    if knots is None:
        return {}
    if isinstance(knots, dict):
        return {var: tuple(float(k) for k in vals) for var, vals in knots.items()}
    # a bare sequence applies to the first (only) variable
    return {variables[0]: tuple(float(k) for k in knots)}


class ModelSpecBuilder:
    """
    Fluent assembly of an AdditiveModelSpec.

    Every method returns the builder; ``build()`` validates and returns the spec.
    """

    def __init__(self, response: str):
        self.response = response
        self._terms: List[SmoothTerm] = []
        self._correlation = CorrelationStructure()
        self._method = "auto"

    def cyclic(
        self,
        variable: str,
        k: int = 10,
        knots: Optional[Sequence[float]] = None,
        by: Optional[str] = None,
        sp: Union[None, float, Sequence[float]] = None,
        bs: str = "cc",
    ) -> "ModelSpecBuilder":
        """Periodic smooth; ``knots`` are the two boundary knots (the period)"""
        if not is_periodic(bs):
            raise ValidationError(f"cyclic() needs a periodic basis, got '{bs}'")
        self._terms.append(
            SmoothTerm(
                variables=(variable,),
                bs=bs,
                k=k,
                knots=_as_knots((variable,), knots),
                by=by,
                sp=_as_sp(sp),
            )
        )
        return self

    def smooth(
        self,
        variable: str,
        k: int = 10,
        bs: str = "cr",
        knots: Optional[Sequence[float]] = None,
        by: Optional[str] = None,
        sp: Union[None, float, Sequence[float]] = None,
    ) -> "ModelSpecBuilder":
        """Non-periodic (or any single-variable) smooth"""
        self._terms.append(
            SmoothTerm(
                variables=(variable,),
                bs=bs,
                k=k,
                knots=_as_knots((variable,), knots),
                by=by,
                sp=_as_sp(sp),
            )
        )
        return self

    def tensor(
        self,
        var1: str,
        var2: str,
        bs: Tuple[str, str] = ("cr", "cr"),
        k: Tuple[int, int] = (5, 5),
        knots: Optional[Dict[str, Sequence[float]]] = None,
        by: Optional[str] = None,
        sp: Union[None, Sequence[float]] = None,
    ) -> "ModelSpecBuilder":
        """Tensor interaction of two variables, excluding their main effects"""
        self._terms.append(
            SmoothTerm(
                variables=(var1, var2),
                bs=tuple(bs),
                k=tuple(int(v) for v in k),
                knots=_as_knots((var1, var2), knots),
                by=by,
                sp=_as_sp(sp),
                interaction=True,
            )
        )
        return self

    def adaptive(
        self,
        variable: str,
        penalty_bs: str,
        k: int = 40,
        m: int = 5,
        knots: Optional[Sequence[float]] = None,
        by: Optional[str] = None,
        sp: Union[None, Sequence[float]] = None,
    ) -> "ModelSpecBuilder":
        """
        Adaptive smooth whose wiggliness penalty varies along ``variable``.

        Args:
            penalty_bs: Family of the underlying basis and of the penalty
                weights ("cp"/"cc" for periodic, "ps"/"cr" otherwise)
            k: Basis dimension
            m: Number of penalty-weight basis functions (penalty resolution)
        """
        self._terms.append(
            SmoothTerm(
                variables=(variable,),
                bs=ADAPTIVE_BASIS,
                k=k,
                knots=_as_knots((variable,), knots),
                by=by,
                sp=_as_sp(sp),
                penalty_bs=penalty_bs,
                penalty_k=m,
            )
        )
        return self

    def ar1(self, rho: float, start_column: Optional[str] = None) -> "ModelSpecBuilder":
        """AR(1) residuals; ``start_column`` flags rows starting a new segment"""
        self._correlation = CorrelationStructure(
            kind="ar1", rho=float(rho), start_column=start_column
        )
        return self

    def fitting_method(self, method: str) -> "ModelSpecBuilder":
        self._method = method
        return self

    def build(self, columns: Optional[Iterable[str]] = None) -> AdditiveModelSpec:
        spec = AdditiveModelSpec(
            response=self.response,
            terms=list(self._terms),
            correlation=self._correlation,
            method=self._method,
        )
        return validate_spec(spec, columns)
