"""
Closed enumeration of tier-gated features.

Feature names are parsed once at the engine boundary. Anything that does
not map to a FeatureName is treated as "not available" by the resolver and
validator rather than being looked up loosely.
"""

from enum import Enum
from typing import Dict, Optional, Union


class FeatureName(str, Enum):
    """Feature keys stored in tier_feature_definitions / user_tier_features."""

    # Limited resources
    MAX_PRODUCTS = "max_products"
    MAX_CATEGORIES = "max_categories"
    MAX_FILE_UPLOAD_SIZE_MB = "max_file_upload_size_mb"
    MAX_PRODUCTS_PER_IMPORT = "max_products_per_import"
    MAX_IMPORT_HISTORY = "max_import_history"

    # History and retention windows
    STOCK_MOVEMENT_HISTORY_DAYS = "stock_movement_history_days"
    NOTIFICATION_HISTORY_LIMIT = "notification_history_limit"
    NOTIFICATION_CHECK_FREQUENCY_HOURS = "notification_check_frequency_hours"
    DASHBOARD_CHART_DAYS = "dashboard_chart_days"
    DATA_RETENTION_YEARS = "data_retention_years"

    # Premium capabilities
    ANALYTICS_ACCESS = "analytics_access"
    EXPORT_CAPABILITIES = "export_capabilities"
    PRIORITY_SUPPORT = "priority_support"
    BULK_OPERATIONS = "bulk_operations"
    CUSTOM_NOTIFICATION_SCHEDULES = "custom_notification_schedules"
    ADVANCED_MESSAGE_TEMPLATES = "advanced_message_templates"
    MULTIPLE_WHATSAPP_NUMBERS = "multiple_whatsapp_numbers"
    SCHEDULED_REPORTS = "scheduled_reports"
    ADVANCED_AUDIT_TRAIL = "advanced_audit_trail"
    STOCK_ACCURACY_ANALYSIS = "stock_accuracy_analysis"
    MOVEMENT_DATA_EXPORT = "movement_data_export"
    ADVANCED_SALES_ANALYTICS = "advanced_sales_analytics"
    PRODUCT_PERFORMANCE_INSIGHTS = "product_performance_insights"
    PRIORITY_SMS_DELIVERY = "priority_sms_delivery"

    @classmethod
    def parse(cls, name: Union[str, "FeatureName", None]) -> Optional["FeatureName"]:
        """
        Map a caller-supplied name to a FeatureName.

        Accepts canonical values and the short aliases used by the product and
        category endpoints. Returns None for unknown names.
        """
        if name is None:
            return None
        if isinstance(name, FeatureName):
            return name
        key = str(name).strip().lower()
        if key in FEATURE_ALIASES:
            return FEATURE_ALIASES[key]
        try:
            return cls(key)
        except ValueError:
            return None

    @property
    def display_name(self) -> str:
        return FEATURE_DISPLAY_NAMES.get(self, self.value.replace("_", " "))


FEATURE_ALIASES: Dict[str, FeatureName] = {
    "products": FeatureName.MAX_PRODUCTS,
    "product_slot": FeatureName.MAX_PRODUCTS,
    "categories": FeatureName.MAX_CATEGORIES,
}

FEATURE_DISPLAY_NAMES: Dict[FeatureName, str] = {
    FeatureName.MAX_PRODUCTS: "products",
    FeatureName.MAX_CATEGORIES: "categories",
    FeatureName.MAX_FILE_UPLOAD_SIZE_MB: "file upload size",
    FeatureName.MAX_PRODUCTS_PER_IMPORT: "products per import",
    FeatureName.MAX_IMPORT_HISTORY: "import history records",
    FeatureName.STOCK_MOVEMENT_HISTORY_DAYS: "stock movement history days",
    FeatureName.NOTIFICATION_HISTORY_LIMIT: "notification history records",
    FeatureName.NOTIFICATION_CHECK_FREQUENCY_HOURS: "notification check frequency",
    FeatureName.DASHBOARD_CHART_DAYS: "dashboard chart days",
    FeatureName.DATA_RETENTION_YEARS: "data retention years",
    FeatureName.ANALYTICS_ACCESS: "analytics access",
    FeatureName.EXPORT_CAPABILITIES: "data export capabilities",
    FeatureName.PRIORITY_SUPPORT: "priority support",
    FeatureName.BULK_OPERATIONS: "bulk operations",
    FeatureName.CUSTOM_NOTIFICATION_SCHEDULES: "custom notification schedules",
    FeatureName.ADVANCED_MESSAGE_TEMPLATES: "advanced message templates",
    FeatureName.MULTIPLE_WHATSAPP_NUMBERS: "multiple WhatsApp numbers",
    FeatureName.SCHEDULED_REPORTS: "scheduled reports",
    FeatureName.ADVANCED_AUDIT_TRAIL: "advanced audit trail",
    FeatureName.STOCK_ACCURACY_ANALYSIS: "stock accuracy analysis",
    FeatureName.MOVEMENT_DATA_EXPORT: "movement data export",
    FeatureName.ADVANCED_SALES_ANALYTICS: "advanced sales analytics",
    FeatureName.PRODUCT_PERFORMANCE_INSIGHTS: "product performance insights",
    FeatureName.PRIORITY_SMS_DELIVERY: "priority SMS delivery",
}

# What an upgrade buys, used in upgrade prompts
UPGRADE_BENEFITS: Dict[FeatureName, str] = {
    FeatureName.MAX_PRODUCTS: "unlimited products",
    FeatureName.MAX_CATEGORIES: "unlimited categories",
    FeatureName.MAX_FILE_UPLOAD_SIZE_MB: "increased storage",
    FeatureName.ANALYTICS_ACCESS: "advanced analytics",
    FeatureName.ADVANCED_SALES_ANALYTICS: "advanced analytics",
    FeatureName.PRIORITY_SUPPORT: "priority support",
}


def display_name_for(name: Union[str, FeatureName]) -> str:
    """User-facing name for a feature, falling back to the raw key."""
    feature = FeatureName.parse(name)
    if feature is not None:
        return feature.display_name
    return str(name).replace("_", " ")
