"""Application configuration via Pydantic BaseSettings.

``Settings`` is the flat environment surface (credentials, capability
toggles, thresholds, custom field names). Pipeline components never read it
directly: ``Settings.sync_config()`` freezes the relevant values into a
``SyncConfig`` that is passed to each component at construction time.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.relay.core.retry import RetryPolicy


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class PublisherMode(str, Enum):
    log = "log"
    crm = "crm"
    redis = "redis"


# ── Immutable pipeline configuration ────────────────────────────────────────


class FeatureFlags(BaseModel):
    """Capability toggles gating every optional pipeline branch."""

    model_config = ConfigDict(frozen=True)

    order_line_items: bool = False
    payment_details: bool = False
    customer_lifetime_value: bool = False
    customer_segmentation: bool = False
    rfm_analysis: bool = False
    customer_tags: bool = False
    opportunity_creation: bool = False
    lead_creation_low_value: bool = True
    recovery_tasks: bool = False
    cart_expiration: bool = False
    platform_events: bool = False

    @property
    def analytics_enabled(self) -> bool:
        return self.customer_lifetime_value or self.customer_segmentation or self.rfm_analysis


class Thresholds(BaseModel):
    """Monetary cutoffs and day windows."""

    model_config = ConfigDict(frozen=True)

    opportunity_min_value: float = 100.0
    tier_platinum: float = 10000.0
    tier_gold: float = 5000.0
    tier_silver: float = 1000.0
    tier_bronze: float = 0.0
    cart_expiration_days: int = 30
    churn_risk_days: int = 90
    recovery_task_high_priority_value: float = 500.0


class OrderFields(BaseModel):
    model_config = ConfigDict(frozen=True)

    storefront_order_id: str = "BigCommerceOrderId__c"
    subtotal: str = "Subtotal__c"
    tax_total: str = "TaxTotal__c"
    shipping_total: str = "ShippingTotal__c"
    storefront_status: str = "BC_Status__c"
    payment_method: str = "PaymentMethod__c"
    transaction_id: str = "TransactionId__c"


class AccountFields(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str = "PersonEmail"
    clv: str = "CLV__c"
    total_orders: str = "Total_Orders__c"
    customer_tier: str = "Customer_Tier__c"
    rfm_score: str = "RFM_Score__c"
    last_order_date: str = "Last_Order_Date__c"
    average_order_value: str = "Average_Order_Value__c"
    tags: str = ""


class LeadFields(BaseModel):
    model_config = ConfigDict(frozen=True)

    cart_value: str = "AbandonedCartValue__c"
    cart_id: str = "AbandonedCartId__c"
    abandoned_date: str = "AbandonedCartDate__c"


class OpportunityFields(BaseModel):
    model_config = ConfigDict(frozen=True)

    cart_id: str = "Cart_ID__c"
    cart_value: str = "Cart_Value__c"
    abandoned_date: str = "Abandoned_Date__c"


class CustomFields(BaseModel):
    """CRM custom field API names. An empty name disables that field."""

    model_config = ConfigDict(frozen=True)

    order: OrderFields = OrderFields()
    account: AccountFields = AccountFields()
    lead: LeadFields = LeadFields()
    opportunity: OpportunityFields = OpportunityFields()


class SyncConfig(BaseModel):
    """Everything the sync pipeline needs, frozen at startup."""

    model_config = ConfigDict(frozen=True)

    features: FeatureFlags = FeatureFlags()
    thresholds: Thresholds = Thresholds()
    retry: RetryPolicy = RetryPolicy()
    fields: CustomFields = CustomFields()


# ── Environment settings ────────────────────────────────────────────────────


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Storefront (BigCommerce)
    BIGCOMMERCE_CLIENT_ID: str = ""
    BIGCOMMERCE_CLIENT_SECRET: str = ""
    BIGCOMMERCE_ACCESS_TOKEN: str = ""
    BIGCOMMERCE_STORE_HASH: str = ""
    BIGCOMMERCE_API_URL: str = "https://api.bigcommerce.com"

    # CRM (Salesforce)
    SALESFORCE_CLIENT_ID: str = ""
    SALESFORCE_CLIENT_SECRET: str = ""
    SALESFORCE_USERNAME: str = ""
    SALESFORCE_PASSWORD: str = ""
    SALESFORCE_SECURITY_TOKEN: str = ""
    SALESFORCE_INSTANCE_URL: str = "https://login.salesforce.com"
    SALESFORCE_API_VERSION: str = "v57.0"

    # Webhooks
    WEBHOOK_SECRET: str = ""

    # Operator endpoints (audit, maintenance). Empty: open in development only
    ADMIN_API_KEY: str = ""

    # Retry
    MAX_RETRY_ATTEMPTS: int = 3
    RETRY_DELAY_MS: int = 5000

    # Event publishing
    EVENT_PUBLISHER: PublisherMode = PublisherMode.log
    REDIS_URL: str = "redis://localhost:6379/0"

    # Audit
    AUDIT_LOG_CAPACITY: int = 10000

    # Cart expiration sweep
    CART_EXPIRATION_INTERVAL_MINUTES: int = 60

    # Feature flags
    FEATURE_ORDER_LINE_ITEMS: bool = False
    FEATURE_PAYMENT_DETAILS: bool = False
    FEATURE_CUSTOMER_LIFETIME_VALUE: bool = False
    FEATURE_CUSTOMER_SEGMENTATION: bool = False
    FEATURE_RFM_ANALYSIS: bool = False
    FEATURE_CUSTOMER_TAGS: bool = False
    FEATURE_OPPORTUNITY_CREATION: bool = False
    FEATURE_LEAD_CREATION_LOW_VALUE: bool = True
    FEATURE_RECOVERY_TASKS: bool = False
    FEATURE_CART_EXPIRATION: bool = False
    FEATURE_PLATFORM_EVENTS: bool = False

    # Thresholds
    OPPORTUNITY_MIN_VALUE: float = 100.0
    CUSTOMER_TIER_PLATINUM: float = 10000.0
    CUSTOMER_TIER_GOLD: float = 5000.0
    CUSTOMER_TIER_SILVER: float = 1000.0
    CART_EXPIRATION_DAYS: int = 30
    CHURN_RISK_DAYS: int = 90
    RECOVERY_TASK_HIGH_PRIORITY_VALUE: float = 500.0

    # Custom field mappings
    SF_ORDER_BC_ID_FIELD: str = "BigCommerceOrderId__c"
    SF_ORDER_SUBTOTAL_FIELD: str = "Subtotal__c"
    SF_ORDER_TAX_FIELD: str = "TaxTotal__c"
    SF_ORDER_SHIPPING_FIELD: str = "ShippingTotal__c"
    SF_ORDER_BC_STATUS_FIELD: str = "BC_Status__c"
    SF_ORDER_PAYMENT_METHOD_FIELD: str = "PaymentMethod__c"
    SF_ORDER_TRANSACTION_ID_FIELD: str = "TransactionId__c"
    SF_ACCOUNT_EMAIL_FIELD: str = "PersonEmail"
    SF_ACCOUNT_CLV_FIELD: str = "CLV__c"
    SF_ACCOUNT_TOTAL_ORDERS_FIELD: str = "Total_Orders__c"
    SF_ACCOUNT_CUSTOMER_TIER_FIELD: str = "Customer_Tier__c"
    SF_ACCOUNT_RFM_SCORE_FIELD: str = "RFM_Score__c"
    SF_ACCOUNT_LAST_ORDER_DATE_FIELD: str = "Last_Order_Date__c"
    SF_ACCOUNT_AVG_ORDER_VALUE_FIELD: str = "Average_Order_Value__c"
    SF_ACCOUNT_TAGS_FIELD: str = ""
    SF_LEAD_CART_VALUE_FIELD: str = "AbandonedCartValue__c"
    SF_LEAD_CART_ID_FIELD: str = "AbandonedCartId__c"
    SF_LEAD_CART_DATE_FIELD: str = "AbandonedCartDate__c"
    SF_OPP_CART_ID_FIELD: str = "Cart_ID__c"
    SF_OPP_CART_VALUE_FIELD: str = "Cart_Value__c"
    SF_OPP_ABANDONED_DATE_FIELD: str = "Abandoned_Date__c"

    def missing_credentials(self) -> list[str]:
        """Return the names of required credentials that are not set."""
        required = (
            "BIGCOMMERCE_ACCESS_TOKEN",
            "BIGCOMMERCE_STORE_HASH",
            "SALESFORCE_CLIENT_ID",
            "SALESFORCE_CLIENT_SECRET",
            "SALESFORCE_USERNAME",
            "SALESFORCE_PASSWORD",
            "WEBHOOK_SECRET",
        )
        return [name for name in required if not getattr(self, name)]

    def sync_config(self) -> SyncConfig:
        """Freeze the pipeline-relevant settings into a SyncConfig."""
        return SyncConfig(
            features=FeatureFlags(
                order_line_items=self.FEATURE_ORDER_LINE_ITEMS,
                payment_details=self.FEATURE_PAYMENT_DETAILS,
                customer_lifetime_value=self.FEATURE_CUSTOMER_LIFETIME_VALUE,
                customer_segmentation=self.FEATURE_CUSTOMER_SEGMENTATION,
                rfm_analysis=self.FEATURE_RFM_ANALYSIS,
                customer_tags=self.FEATURE_CUSTOMER_TAGS,
                opportunity_creation=self.FEATURE_OPPORTUNITY_CREATION,
                lead_creation_low_value=self.FEATURE_LEAD_CREATION_LOW_VALUE,
                recovery_tasks=self.FEATURE_RECOVERY_TASKS,
                cart_expiration=self.FEATURE_CART_EXPIRATION,
                platform_events=self.FEATURE_PLATFORM_EVENTS,
            ),
            thresholds=Thresholds(
                opportunity_min_value=self.OPPORTUNITY_MIN_VALUE,
                tier_platinum=self.CUSTOMER_TIER_PLATINUM,
                tier_gold=self.CUSTOMER_TIER_GOLD,
                tier_silver=self.CUSTOMER_TIER_SILVER,
                cart_expiration_days=self.CART_EXPIRATION_DAYS,
                churn_risk_days=self.CHURN_RISK_DAYS,
                recovery_task_high_priority_value=self.RECOVERY_TASK_HIGH_PRIORITY_VALUE,
            ),
            retry=RetryPolicy(
                max_attempts=self.MAX_RETRY_ATTEMPTS,
                base_delay=self.RETRY_DELAY_MS / 1000.0,
            ),
            fields=CustomFields(
                order=OrderFields(
                    storefront_order_id=self.SF_ORDER_BC_ID_FIELD,
                    subtotal=self.SF_ORDER_SUBTOTAL_FIELD,
                    tax_total=self.SF_ORDER_TAX_FIELD,
                    shipping_total=self.SF_ORDER_SHIPPING_FIELD,
                    storefront_status=self.SF_ORDER_BC_STATUS_FIELD,
                    payment_method=self.SF_ORDER_PAYMENT_METHOD_FIELD,
                    transaction_id=self.SF_ORDER_TRANSACTION_ID_FIELD,
                ),
                account=AccountFields(
                    email=self.SF_ACCOUNT_EMAIL_FIELD,
                    clv=self.SF_ACCOUNT_CLV_FIELD,
                    total_orders=self.SF_ACCOUNT_TOTAL_ORDERS_FIELD,
                    customer_tier=self.SF_ACCOUNT_CUSTOMER_TIER_FIELD,
                    rfm_score=self.SF_ACCOUNT_RFM_SCORE_FIELD,
                    last_order_date=self.SF_ACCOUNT_LAST_ORDER_DATE_FIELD,
                    average_order_value=self.SF_ACCOUNT_AVG_ORDER_VALUE_FIELD,
                    tags=self.SF_ACCOUNT_TAGS_FIELD,
                ),
                lead=LeadFields(
                    cart_value=self.SF_LEAD_CART_VALUE_FIELD,
                    cart_id=self.SF_LEAD_CART_ID_FIELD,
                    abandoned_date=self.SF_LEAD_CART_DATE_FIELD,
                ),
                opportunity=OpportunityFields(
                    cart_id=self.SF_OPP_CART_ID_FIELD,
                    cart_value=self.SF_OPP_CART_VALUE_FIELD,
                    abandoned_date=self.SF_OPP_ABANDONED_DATE_FIELD,
                ),
            ),
        )


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
