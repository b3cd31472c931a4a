"""
Run configuration snapshot.

Everything a run needs from mutable configuration (markup, carton size
thresholds, feature flags) is read once into a frozen RunConfig at run
start and passed to every component, so a run never sees a property change
half-way through.
"""
import math
from dataclasses import dataclass, field
from typing import Optional

from shipsync.config import Settings, get_settings
from shipsync.services import property_store as props
from shipsync.services.property_store import PropertyStore
from shipsync.utils.logger import log


@dataclass(frozen=True)
class CartonSizeThresholds:
    """Inclusive upper bounds on package volume for each carton size."""
    s_max: float = 350.0
    m_max: float = 1000.0
    l_max: float = 3500.0
    xl_max: float = math.inf

    def is_monotonic(self) -> bool:
        return self.s_max < self.m_max < self.l_max < self.xl_max

    def to_dict(self) -> dict:
        return {
            "s_max": self.s_max,
            "m_max": self.m_max,
            "l_max": self.l_max,
            "xl_max": None if math.isinf(self.xl_max) else self.xl_max,
        }


DEFAULT_CARTON_THRESHOLDS = CartonSizeThresholds()


def _parse_threshold(raw: Optional[str], default: float) -> float:
    """Unset, unparseable or non-positive values fall back to the default."""
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if value != value or value <= 0:
        return default
    return value


def build_carton_thresholds(
    s_max: Optional[str],
    m_max: Optional[str],
    l_max: Optional[str],
    xl_max: Optional[str],
) -> CartonSizeThresholds:
    """Build thresholds from raw property values, enforcing S < M < L < XL."""
    thresholds = CartonSizeThresholds(
        s_max=_parse_threshold(s_max, DEFAULT_CARTON_THRESHOLDS.s_max),
        m_max=_parse_threshold(m_max, DEFAULT_CARTON_THRESHOLDS.m_max),
        l_max=_parse_threshold(l_max, DEFAULT_CARTON_THRESHOLDS.l_max),
        xl_max=_parse_threshold(xl_max, DEFAULT_CARTON_THRESHOLDS.xl_max),
    )
    if not thresholds.is_monotonic():
        log.bind(thresholds=thresholds.to_dict()).warning(
            "Carton size thresholds are not strictly increasing, using defaults"
        )
        return DEFAULT_CARTON_THRESHOLDS
    return thresholds


def parse_markup(raw: Optional[str], default: float = 0.0) -> float:
    """Parse a markup percentage ("12.5", "12.5%"), falling back to default."""
    if raw is None:
        return default
    text = str(raw).strip().rstrip("%").strip()
    if not text:
        return default
    try:
        value = float(text)
    except ValueError:
        return default
    return default if value != value else value


@dataclass(frozen=True)
class RunConfig:
    """Immutable configuration for a single run."""
    global_markup: float = 0.0
    carton_thresholds: CartonSizeThresholds = field(default_factory=CartonSizeThresholds)
    client_emails_enabled: bool = False
    house_brand_marker: str = "metscube"
    lookback_minutes: int = 15
    max_execution_seconds: int = 300
    backfill_max_execution_seconds: int = 300
    batch_size: int = 500
    include_fulfillments: bool = True
    page_size: int = 500


def load_run_config(
    store: Optional[PropertyStore] = None,
    settings: Optional[Settings] = None,
) -> RunConfig:
    """Snapshot configuration at run start."""
    settings = settings or get_settings()
    store = store or PropertyStore()
    values = store.get_all()

    config = RunConfig(
        global_markup=parse_markup(
            values.get(props.COST_MARKUP_PERCENTAGE),
            default=settings.default_cost_markup_percentage,
        ),
        carton_thresholds=build_carton_thresholds(
            values.get(props.CARTON_SIZE_S_MAX),
            values.get(props.CARTON_SIZE_M_MAX),
            values.get(props.CARTON_SIZE_L_MAX),
            values.get(props.CARTON_SIZE_XL_MAX),
        ),
        client_emails_enabled=values.get(props.CLIENT_EMAILS_ENABLED) == "true",
        house_brand_marker=settings.house_brand_marker.lower(),
        lookback_minutes=settings.lookback_minutes,
        max_execution_seconds=settings.max_execution_seconds,
        backfill_max_execution_seconds=settings.backfill_max_execution_seconds,
        batch_size=settings.backfill_batch_size,
        include_fulfillments=settings.include_fulfillments,
        page_size=settings.api_page_size,
    )
    log.debug(
        f"Run config loaded: markup={config.global_markup}% "
        f"thresholds={config.carton_thresholds.to_dict()}"
    )
    return config


def set_carton_size_settings(
    s_max: float,
    m_max: float,
    l_max: float,
    xl_max: Optional[float] = None,
    store: Optional[PropertyStore] = None,
) -> CartonSizeThresholds:
    """Persist new carton thresholds. Raises ValueError if not strictly increasing."""
    thresholds = CartonSizeThresholds(
        s_max=float(s_max),
        m_max=float(m_max),
        l_max=float(l_max),
        xl_max=math.inf if xl_max is None else float(xl_max),
    )
    if min(thresholds.s_max, thresholds.m_max, thresholds.l_max) <= 0:
        raise ValueError("Carton size thresholds must be positive")
    if not thresholds.is_monotonic():
        raise ValueError("Carton size thresholds must satisfy S < M < L < XL")

    store = store or PropertyStore()
    store.set_many({
        props.CARTON_SIZE_S_MAX: str(thresholds.s_max),
        props.CARTON_SIZE_M_MAX: str(thresholds.m_max),
        props.CARTON_SIZE_L_MAX: str(thresholds.l_max),
        props.CARTON_SIZE_XL_MAX: str(thresholds.xl_max),
    })
    log.info(f"Carton size settings updated: {thresholds.to_dict()}")
    return thresholds


def set_global_markup(markup: float, store: Optional[PropertyStore] = None) -> float:
    store = store or PropertyStore()
    store.set(props.COST_MARKUP_PERCENTAGE, str(float(markup)))
    log.info(f"Global cost markup set to {markup}%")
    return float(markup)


def set_client_emails_enabled(enabled: bool, store: Optional[PropertyStore] = None) -> bool:
    store = store or PropertyStore()
    store.set(props.CLIENT_EMAILS_ENABLED, "true" if enabled else "false")
    log.info(f"Client emails {'ENABLED' if enabled else 'DISABLED'}")
    return enabled
