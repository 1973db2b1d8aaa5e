"""
Text2SQL configuration
Model credentials, agent tuning constants, retrieval thresholds and SQL guard rails
"""
import os
from typing import Literal

from pydantic import BaseModel, Field


class LLMProviderConfig(BaseModel):
    """Configuration for LLM providers"""

    # Gemini Configuration
    gemini_api_key: str = Field(
        default_factory=lambda: os.getenv("GEMINI_API_KEY", os.getenv("GOOGLE_API_KEY", ""))
    )
    gemini_model: str = Field(default_factory=lambda: os.getenv("GEMINI_MODEL", "gemini-2.0-flash"))
    gemini_light_model: str = Field(
        default_factory=lambda: os.getenv("GEMINI_LIGHT_MODEL", "gemini-2.0-flash-lite")
    )
    gemini_max_tokens: int = 2000

    # Claude Configuration
    claude_api_key: str = Field(
        default_factory=lambda: os.getenv("CLAUDE_API_KEY", "")
    )
    claude_model: str = "claude-haiku-4-5-20251001"
    claude_max_tokens: int = 2000

    # OpenAI Configuration
    openai_api_key: str = Field(
        default_factory=lambda: os.getenv("OPENAI_API_KEY", "")
    )
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 2000
    openai_embedding_model: str = "text-embedding-3-small"

    request_timeout: float = 60.0


class AgentConfig(BaseModel):
    """Sampling and context-window constants shared by the agents"""

    temperature_precise: float = 0.2
    temperature_standard: float = 0.3
    temperature_complex: float = 0.4

    max_tokens_expansion: int = 100
    max_tokens_summary: int = 150
    max_tokens_title: int = 50
    max_tokens_validation: int = 300
    max_tokens_response_friendly: int = 300
    max_tokens_response_final: int = 500
    max_tokens_response_insight: int = 2000
    max_tokens_orchestration: int = 400
    max_tokens_sql: int = 1000
    max_tokens_column_labels: int = 200

    recent_messages_orchestrator: int = 10
    recent_messages_sql: int = 5
    recent_messages_response: int = 5

    preview_log: int = 200
    preview_data_final: int = 800
    preview_validation: int = 1000

    label_user: str = "Người dùng"
    label_ai: str = "AI"

    # Rolling summary
    max_messages_before_summary: int = 20
    summary_batch: int = 5
    summary_max_words: int = 200

    # Title
    title_max_words: int = 15
    title_max_chars: int = 100


class RagConfig(BaseModel):
    """Similarity thresholds and result limits for retrieval"""

    schema_threshold: float = 0.75
    business_threshold: float = 0.75
    qa_threshold: float = 0.85
    orchestrator_business_threshold: float = 0.85
    default_threshold: float = 0.75

    schema_limit: int = 16
    schema_limit_orchestrator: int = 6
    business_limit: int = 6
    business_limit_orchestrator: int = 8
    qa_limit: int = 2

    canonical_hard_threshold: float = 0.92
    canonical_soft_threshold: float = 0.8
    canonical_prefer_threshold: float = 0.99
    qa_save_reuse_threshold: float = 0.95

    schema_chunk_lines: int = 60


class SqlSafetyConfig(BaseModel):
    """Read-only guard rails applied to every generated query"""

    allowed_tables: list[str] = [
        # Users & auth
        "users", "verification_codes", "refresh_tokens", "user_addresses",
        # Buildings & rooms
        "buildings", "rooms", "room_instances", "room_images", "room_pricing",
        "room_amenities", "room_costs", "room_rules", "room_instance_meter_readings",
        "room_rule_templates", "amenities", "cost_type_templates",
        # Booking, rental, billing
        "room_bookings", "room_invitations", "rentals", "bills", "bill_items",
        "payments", "ratings",
        # Seeking posts & preferences
        "room_requests", "roommate_seeking_posts", "roommate_applications",
        "tenant_room_preferences", "tenant_roommate_preferences",
        # Messaging
        "conversations", "messages", "message_attachments",
        # Contracts
        "contracts", "contract_signatures", "contract_audit_logs",
        # System
        "notifications", "error_logs",
        # Locations
        "provinces", "districts", "wards",
    ]
    denied_keywords: list[str] = [
        "DELETE", "UPDATE", "INSERT", "DROP", "ALTER", "CREATE",
        "TRUNCATE", "GRANT", "REVOKE", "EXECUTE", "EXEC", "CALL",
    ]
    default_limit: int = 50
    max_limit: int = 50


class ResponseConfig(BaseModel):
    """Structured payload limits and chart rendering settings"""

    list_items_limit: int = 50
    table_rows_limit: int = 50
    preview_limit: int = 50
    max_table_columns: int = 8
    chart_top_n: int = 10
    chart_mime_type: str = "image/png"
    chart_alt_text: str = "Chart (Top 10)"
    quickchart_base_url: str = "https://quickchart.io/chart"
    chart_color_palette: list[str] = [
        "#FF6384", "#36A2EB", "#FFCE56", "#4BC0C0", "#9966FF",
        "#FF9F40", "#FF6384", "#C9CBCF", "#4BC0C0", "#FF6384",
    ]
    chart_default_type: Literal["bar", "line", "pie", "doughnut", "radar", "polarArea"] = "bar"


# Global config instances
llm_config = LLMProviderConfig()
agent_config = AgentConfig()
rag_config = RagConfig()
sql_safety_config = SqlSafetyConfig()
response_config = ResponseConfig()
