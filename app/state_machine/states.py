"""
Flow and Step Definitions

Every flow owns a closed set of steps. The first member of each step enum is
the flow's initial step. FLOW_STEPS is the single source the router checks a
transition against, so a session can never point at an undeclared step.
"""
from enum import Enum


class FlowType(str, Enum):
    """Conversation flows"""

    MAIN_MENU = "main_menu"
    REGISTRATION = "registration"
    FISH_SELLER_REGISTER = "fish_seller_register"
    FISH_POST_CATCH = "fish_post_catch"
    FISH_STOCK_UPDATE = "fish_stock_update"
    FISH_SUBSCRIBE = "fish_subscribe"
    FISH_MANAGE_SUBSCRIPTION = "fish_manage_subscription"
    FISH_BROWSE = "fish_browse"
    AGREEMENT_CREATE = "agreement_create"
    JOB_POST = "job_post"

    @classmethod
    def parse(cls, value: str | None) -> "FlowType | None":
        try:
            return cls(value)
        except ValueError:
            return None


class MainMenuStep(str, Enum):
    IDLE = "idle"


class RegistrationStep(str, Enum):
    ASK_NAME = "ask_name"
    ASK_LOCATION = "ask_location"


class SellerRegisterStep(str, Enum):
    ASK_BUSINESS_NAME = "ask_business_name"
    ASK_LOCATION = "ask_location"
    CONFIRM = "confirm"


class CatchPostStep(str, Enum):
    SELECT_FISH = "select_fish"
    ENTER_QUANTITY = "enter_quantity"
    ENTER_PRICE = "enter_price"
    UPLOAD_PHOTO = "upload_photo"
    CONFIRM = "confirm"
    ADD_ANOTHER = "add_another"


class StockUpdateStep(str, Enum):
    SELECT_CATCH = "select_catch"
    SELECT_STATUS = "select_status"
    CONFIRM = "confirm"


class SubscribeStep(str, Enum):
    SELECT_LOCATION = "select_location"
    SET_RADIUS = "set_radius"
    SELECT_FISH_TYPES = "select_fish_types"
    SELECT_FISH = "select_fish"
    SET_FREQUENCY = "set_frequency"
    CONFIRM = "confirm"


class ManageSubscriptionStep(str, Enum):
    SELECT_SUBSCRIPTION = "select_subscription"
    SELECT_ACTION = "select_action"
    SET_RADIUS = "set_radius"


class BrowseStep(str, Enum):
    LOCATION = "location"
    BROWSE = "browse"
    DETAIL = "detail"


class AgreementStep(str, Enum):
    ASK_DIRECTION = "ask_direction"
    ASK_AMOUNT = "ask_amount"
    ASK_NAME = "ask_name"
    ASK_PHONE = "ask_phone"
    ASK_PURPOSE = "ask_purpose"
    ASK_DUE_DATE = "ask_due_date"
    REVIEW = "review"


class JobPostStep(str, Enum):
    SELECT_CATEGORY = "select_category"
    ENTER_TITLE = "enter_title"
    ENTER_LOCATION = "enter_location"
    ENTER_PAY = "enter_pay"
    CONFIRM = "confirm"


FLOW_STEPS: dict[FlowType, type[Enum]] = {
    FlowType.MAIN_MENU: MainMenuStep,
    FlowType.REGISTRATION: RegistrationStep,
    FlowType.FISH_SELLER_REGISTER: SellerRegisterStep,
    FlowType.FISH_POST_CATCH: CatchPostStep,
    FlowType.FISH_STOCK_UPDATE: StockUpdateStep,
    FlowType.FISH_SUBSCRIBE: SubscribeStep,
    FlowType.FISH_MANAGE_SUBSCRIPTION: ManageSubscriptionStep,
    FlowType.FISH_BROWSE: BrowseStep,
    FlowType.AGREEMENT_CREATE: AgreementStep,
    FlowType.JOB_POST: JobPostStep,
}

# flows עם תופעות לוואי מרובות-שירותים - מעובדים ב-worker ולא בתוך בקשת ה-webhook
COMPLEX_FLOWS = frozenset({
    FlowType.AGREEMENT_CREATE,
    FlowType.FISH_POST_CATCH,
    FlowType.JOB_POST,
})

# flows שלא דורשים משתמש רשום
PUBLIC_FLOWS = frozenset({FlowType.MAIN_MENU, FlowType.REGISTRATION})

# flows למוכרי דגים בלבד
FISH_SELLER_FLOWS = frozenset({FlowType.FISH_POST_CATCH, FlowType.FISH_STOCK_UPDATE})

IDLE_STEPS = frozenset({MainMenuStep.IDLE.value})


def initial_step(flow: FlowType) -> str:
    return next(iter(FLOW_STEPS[flow])).value


def is_declared_step(flow: FlowType, step: str | None) -> bool:
    return step in {s.value for s in FLOW_STEPS[flow]}
