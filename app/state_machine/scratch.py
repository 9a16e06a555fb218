"""
Typed per-flow scratch data.

The session blob holds exactly one of these models, tagged with its flow:
{"flow": "fish_subscribe", "radius_km": 5, ...}. A blob tagged with another
flow (or one that no longer validates) loads as an empty model, so keys from
an abandoned flow can never leak into the next one.
"""
from datetime import date

from pydantic import BaseModel, ConfigDict, ValidationError

from app.core.logging import get_logger
from app.state_machine.states import FlowType

logger = get_logger(__name__)


class FlowScratch(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_assignment=True)


class MainMenuScratch(FlowScratch):
    pass


class RegistrationScratch(FlowScratch):
    name: str | None = None
    # ה-flow שהמשתמש ביקש לפני שנשלח להרשמה
    next_flow: FlowType | None = None


class SellerRegisterScratch(FlowScratch):
    business_name: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    location_name: str | None = None


class CatchPostScratch(FlowScratch):
    fish_type_id: int | None = None
    fish_name: str | None = None
    quantity_min: int | None = None
    quantity_max: int | None = None
    price_per_kg: float | None = None
    photo_media_id: str | None = None
    posted_catch_ids: list[int] = []


class StockUpdateScratch(FlowScratch):
    catch_id: int | None = None
    new_status: str | None = None


class SubscribeScratch(FlowScratch):
    latitude: float | None = None
    longitude: float | None = None
    location_label: str | None = None
    radius_km: int | None = None
    all_fish_types: bool = True
    fish_type_ids: list[int] = []
    frequency: str | None = None


class ManageSubscriptionScratch(FlowScratch):
    subscription_id: int | None = None


class BrowseScratch(FlowScratch):
    latitude: float | None = None
    longitude: float | None = None
    radius_km: float | None = None
    catch_ids: list[int] = []
    selected_catch_id: int | None = None


class AgreementScratch(FlowScratch):
    direction: str | None = None
    amount: float | None = None
    counterparty_name: str | None = None
    counterparty_phone: str | None = None
    purpose: str | None = None
    due_date: date | None = None


class JobPostScratch(FlowScratch):
    category: str | None = None
    title: str | None = None
    location_name: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    pay_amount: float | None = None


SCRATCH_MODELS: dict[FlowType, type[FlowScratch]] = {
    FlowType.MAIN_MENU: MainMenuScratch,
    FlowType.REGISTRATION: RegistrationScratch,
    FlowType.FISH_SELLER_REGISTER: SellerRegisterScratch,
    FlowType.FISH_POST_CATCH: CatchPostScratch,
    FlowType.FISH_STOCK_UPDATE: StockUpdateScratch,
    FlowType.FISH_SUBSCRIBE: SubscribeScratch,
    FlowType.FISH_MANAGE_SUBSCRIPTION: ManageSubscriptionScratch,
    FlowType.FISH_BROWSE: BrowseScratch,
    FlowType.AGREEMENT_CREATE: AgreementScratch,
    FlowType.JOB_POST: JobPostScratch,
}


def empty_scratch(flow: FlowType) -> FlowScratch:
    return SCRATCH_MODELS[flow]()


def load_scratch(flow: FlowType, blob: dict | None) -> FlowScratch:
    """Read the session blob as the scratch model of `flow`"""
    blob = blob or {}
    if blob.get("flow") != flow.value:
        return empty_scratch(flow)
    data = {key: value for key, value in blob.items() if key != "flow"}
    try:
        return SCRATCH_MODELS[flow].model_validate(data)
    except ValidationError as e:
        logger.warning(
            "Discarding unreadable scratch data",
            extra_data={"flow": flow.value, "errors": e.error_count()}
        )
        return empty_scratch(flow)


def dump_scratch(flow: FlowType, scratch: FlowScratch) -> dict:
    if not isinstance(scratch, SCRATCH_MODELS[flow]):
        raise TypeError(
            f"{type(scratch).__name__} is not the scratch model of flow '{flow.value}'"
        )
    return {"flow": flow.value, **scratch.model_dump(mode="json", exclude_none=True)}
