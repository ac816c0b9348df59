import logging
import re
from dataclasses import dataclass

from .errors import AccountAlreadyExists, GatewayError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

BUSINESS_TYPES = (
    "individual",
    "partnership",
    "llp",
    "private_limited",
    "public_limited",
    "trust",
    "society",
    "ngo",
)
REQUIRED_FIELDS = ("gymName", "email", "phone", "businessType")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_RE = re.compile(r"^\+?[0-9]{8,15}$")


@dataclass
class OnboardingResult:
    merchant_account_id: str
    external_account_id: str
    onboarding_link: str
    status: str

    def to_dict(self):
        return {
            "success": True,
            "merchant_account_id": self.merchant_account_id,
            "account_id": self.external_account_id,
            "onboarding_link": self.onboarding_link,
            "status": self.status,
            "message": "Account created. Complete KYC to start receiving payments.",
        }


def validate_details(details):
    missing = [name for name in REQUIRED_FIELDS if not details.get(name)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    if not EMAIL_RE.match(str(details["email"])):
        raise ValidationError("Invalid contact email")
    if not PHONE_RE.match(str(details["phone"]).replace(" ", "")):
        raise ValidationError("Invalid contact phone")
    if details["businessType"] not in BUSINESS_TYPES:
        raise ValidationError(f"Unsupported business type: {details['businessType']}")


def _account_payload(user_id, details):
    gym_name = details["gymName"]
    return {
        "email": details["email"],
        "phone": str(details["phone"]).replace(" ", ""),
        "type": "route",
        "reference_id": user_id[:20],
        "legal_business_name": details.get("businessName") or gym_name,
        "business_type": details["businessType"],
        "contact_name": gym_name,
        "profile": {
            "category": "healthcare",
            "subcategory": "fitness",
            "addresses": {
                "registered": {
                    "street1": details.get("gymAddress") or "To be updated",
                    "street2": "",
                    "city": details.get("gymCity") or "To be updated",
                    "state": details.get("gymState") or "To be updated",
                    "postal_code": details.get("gymPincode") or "000000",
                    "country": "IN",
                }
            },
        },
        "legal_info": {"gst": details["gstin"]} if details.get("gstin") else {},
        "notes": {"gym_name": gym_name, "user_id": user_id},
    }


def create_merchant_account(store, gateway, user_id, details, dashboard_url):
    """Register the caller as a gym owner with a connected gateway account."""
    validate_details(details)

    existing = store.get_merchant_by_user(user_id)
    if existing is not None and existing.external_account_id:
        logger.info(f"[onboarding] account already exists user_id={user_id}")
        raise AccountAlreadyExists(
            "Account already exists",
            merchant_account_id=existing.id,
            account_id=existing.external_account_id,
            status=existing.account_status,
        )

    logger.info(f"[onboarding] creating linked account user_id={user_id}")
    account = gateway.create_linked_account(_account_payload(user_id, details))
    external_account_id = account.get("id")
    if not external_account_id:
        raise GatewayError("Payment gateway returned an account without id")
    status = account.get("status") or "created"
    onboarding_link = f"{dashboard_url.rstrip('/')}/{external_account_id}"

    values = {
        "gym_name": details["gymName"],
        "gym_address": details.get("gymAddress"),
        "gym_city": details.get("gymCity"),
        "gym_state": details.get("gymState"),
        "gym_pincode": details.get("gymPincode"),
        "gym_phone": details.get("gymPhone"),
        "contact_email": details["email"],
        "contact_phone": details["phone"],
        "business_type": details["businessType"],
        "business_name": details.get("businessName") or details["gymName"],
        "gstin": details.get("gstin"),
        "external_account_id": external_account_id,
        "account_status": status,
        "onboarding_link": onboarding_link,
        "onboarding_completed": False,
    }
    try:
        merchant = store.upsert_merchant(user_id, values)
    except PersistenceError:
        logger.critical(
            f"[onboarding] gateway account created but not saved user_id={user_id} "
            f"account_id={external_account_id}"
        )
        raise
    store.ensure_settings(merchant.id)
    logger.info(f"[onboarding] merchant saved merchant_id={merchant.id} account_id={external_account_id}")

    return OnboardingResult(
        merchant_account_id=merchant.id,
        external_account_id=external_account_id,
        onboarding_link=onboarding_link,
        status=status,
    )
