"""
Activation types consumed by the downstream audience activation process.

Each key maps to the event name sent for activated users and the query template that
selects them. Templates use str.format placeholders:
    {project_id}, {dataset}   - where the prediction / feature tables live
    {source_table}            - table holding the scored users
"""
from typing import Dict

ACTIVATION_TYPES: Dict[str, Dict[str, str]] = {
    "audience-segmentation-15": {
        "activation_event_name": "maj_audience_segmentation_15",
        "source_query_template": (
            "SELECT user_pseudo_id, prediction AS segment_id "
            'FROM "{project_id}"."{dataset}"."{source_table}" '
            "WHERE prediction IS NOT NULL"
        ),
    },
    "purchase-propensity-30-15": {
        "activation_event_name": "maj_purchase_propensity_30_15",
        "source_query_template": (
            "SELECT user_pseudo_id, prediction_prob AS propensity "
            'FROM "{project_id}"."{dataset}"."{source_table}" '
            "WHERE prediction = 'true' ORDER BY prediction_prob DESC"
        ),
    },
    "purchase-propensity-15-7": {
        "activation_event_name": "maj_purchase_propensity_15_7",
        "source_query_template": (
            "SELECT user_pseudo_id, prediction_prob AS propensity "
            'FROM "{project_id}"."{dataset}"."{source_table}" '
            "WHERE prediction = 'true' ORDER BY prediction_prob DESC"
        ),
    },
    "churn-propensity-30-15": {
        "activation_event_name": "maj_churn_propensity_30_15",
        "source_query_template": (
            "SELECT user_pseudo_id, prediction_prob AS churn_risk "
            'FROM "{project_id}"."{dataset}"."{source_table}" '
            "WHERE prediction = 'true' ORDER BY prediction_prob DESC"
        ),
    },
    "cltv-180-30": {
        "activation_event_name": "maj_cltv_180_30",
        "source_query_template": (
            "SELECT user_pseudo_id, predicted_value AS lifetime_value "
            'FROM "{project_id}"."{dataset}"."{source_table}" '
            "WHERE predicted_value > 0 ORDER BY predicted_value DESC"
        ),
    },
}


def get_activation_type(key: str) -> Dict[str, str]:
    """Return {activation_event_name, source_query_template} for an activation type."""
    try:
        return ACTIVATION_TYPES[key]
    except KeyError:
        raise KeyError(
            f"Unknown activation type {key!r}; expected one of {sorted(ACTIVATION_TYPES)}"
        ) from None


def render_source_query(key: str, **params: str) -> str:
    """Fill the activation type's query template. Missing placeholders raise KeyError."""
    template = get_activation_type(key)["source_query_template"]
    return template.format(**params)
