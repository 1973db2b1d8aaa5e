"""Prompt assembly for the Text2SQL agents.

Each builder returns the full prompt text for one LLM call. The prompts are
written in Vietnamese because answers are shown to Vietnamese users; the
machine-readable parts (``REQUEST_TYPE:``, ``IS_VALID:``, JSON keys) stay in
English so the parsers in :mod:`app.text2sql.agents` can rely on them.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from .config import agent_config

_RULE = "═" * 63

ROLE_LABELS = {"TENANT": "[TENANT]", "LANDLORD": "[LANDLORD]", "GUEST": "[GUEST]"}

_ENUM_HINTS = """\
     * room_instances.status: 'available', 'occupied', 'maintenance', 'reserved', 'unavailable'
     * rentals.status: 'active', 'terminated', 'expired', 'pending_renewal'
     * room_bookings.status: 'pending', 'accepted', 'rejected', 'expired', 'cancelled', 'awaiting_confirmation'
     * bills.status: 'draft', 'pending', 'paid', 'overdue', 'cancelled'
     * payments.payment_type: 'rent', 'deposit', 'utility', 'fee', 'refund'
     * payments.payment_method: 'bank_transfer', 'cash', 'e_wallet', 'card'
     * payments.payment_status: 'pending', 'completed', 'failed', 'refunded'
     * users.role: 'tenant', 'landlord'
     * rooms.room_type: 'boarding_house', 'dormitory', 'sleepbox', 'apartment', 'whole_house'
     * room_requests.status: 'active', 'paused', 'closed', 'expired'"""


def format_history(messages: Optional[Iterable[Mapping[str, Any]]], limit: Optional[int] = None) -> str:
    """Render ``role: content`` pairs with the Vietnamese speaker labels."""

    if not messages:
        return ""
    items = list(messages)
    if limit is not None:
        items = items[-limit:]
    lines = []
    for message in items:
        role = message.get("role")
        if role == "system":
            continue
        label = agent_config.label_user if role == "user" else agent_config.label_ai
        lines.append(f"{label}: {message.get('content', '')}")
    return "\n".join(lines)


def role_label(user_role: str) -> str:
    return ROLE_LABELS.get(str(user_role).upper(), "[GUEST]")


# ---------------------------------------------------------------- orchestrator
def build_orchestrator_prompt(
    *,
    query: str,
    is_first_message: bool,
    user_role: str,
    user_id: Optional[str] = None,
    recent_messages: str = "",
    business_context: str = "",
    page_context: Optional[Mapping[str, Any]] = None,
) -> str:
    label = role_label(user_role)
    user_block = (
        f"THÔNG TIN NGƯỜI DÙNG:\nUser ID: {user_id}\nUser Role: {user_role}\n"
        if user_id
        else "NGƯỜI DÙNG: Khách (chưa đăng nhập)\n"
    )
    business_block = f"NGỮ CẢNH NGHIỆP VỤ (từ RAG):\n{business_context}\n\n" if business_context else ""
    history_block = f"NGỮ CẢNH HỘI THOẠI:\n{recent_messages}\n\n" if recent_messages else ""
    page_block = ""
    if page_context and page_context.get("entity"):
        page_block = (
            "TRANG NGƯỜI DÙNG ĐANG XEM:\n"
            f"Entity: {page_context.get('entity')}\n"
            f"Identifier: {page_context.get('identifier') or ''}\n"
            f"Type: {page_context.get('type') or ''}\n\n"
        )

    return f"""Bạn là AI Agent 1 - Orchestrator Agent (Nhà điều phối) của hệ thống Trustay. Nhiệm vụ của bạn là:
1. Đánh nhãn user role và phân loại request type
2. Đọc business context từ RAG để nắm vững nghiệp vụ hệ thống
3. Quyết định xem có đủ thông tin để tạo SQL query không
4. CHỈ hỏi thông tin THỰC SỰ CẦN THIẾT

{user_block}
{business_block}{history_block}{page_block}Câu hỏi hiện tại: "{query}"
Là tin nhắn đầu tiên: {str(is_first_message).lower()}

CÁC DOMAIN CHÍNH TRONG HỆ THỐNG (minh họa, ưu tiên ngữ cảnh RAG nếu khác):
- User Management: users, user_addresses, verification_codes
- Building & Room: buildings, rooms, room_instances, room_images, amenities, room_rules, room_costs, room_pricing
- Booking & Rental: room_bookings, rentals
- Billing & Payments: bills, bill_items, payments
- Matching & Requests: room_requests, roommate_seeking_posts, roommate_applications
- Contracts: contracts, contract_signatures
- Location: provinces, districts, wards

NGUYÊN TẮC:
- ƯU TIÊN QUERY khi có thể suy đoán ý định từ business context
- "tìm phòng ..." là tìm rooms; "có ai đang tìm phòng ...?" là tìm room_requests
- "thống kê/hoá đơn/doanh thu" là yêu cầu thống kê (aggregate)
- CHỈ CLARIFICATION khi hoàn toàn không hiểu ý định
- INTENT_ACTION=own khi hỏi dữ liệu cá nhân ("của tôi", "tôi có"), search khi tìm toàn hệ thống, stats khi thống kê

Trả về theo format:
REQUEST_TYPE: QUERY/GREETING/CLARIFICATION/GENERAL_CHAT
MODE_HINT: LIST/TABLE/CHART/INSIGHT
ENTITY_HINT: room|post|room_seeking_post|none
FILTERS_HINT: [mô tả ngắn gọn filter nếu có, ví dụ: quận="gò vấp", giá<3tr]
TABLES_HINT: [các bảng liên quan, cách nhau bởi dấu phẩy]
RELATIONSHIPS_HINT: [quan hệ JOIN, ví dụ: rooms→buildings(owner)]
INTENT_ACTION: search|own|stats
MISSING_PARAMS: [CHỈ khi REQUEST_TYPE=QUERY và THỰC SỰ THIẾU thông tin bắt buộc]
  Format: name:reason:examples|name:reason:examples
  Ví dụ: location:Cần biết khu vực tìm phòng:Quận 1,Gò Vấp
  Nếu không thiếu, để "none"
RESPONSE: {label} [câu trả lời tự nhiên, thân thiện, có emoji phù hợp]"""


# ---------------------------------------------------------------- question expansion
def build_modification_context(query: str, previous_sql: str, previous_canonical: Optional[str] = None) -> str:
    return f"""{_RULE}
MODIFICATION QUERY - THAM CHIẾU SQL TRƯỚC ĐÓ TRONG PHIÊN
{_RULE}
Câu hỏi trước đó (đầy đủ): "{previous_canonical or query}"
SQL query trước đó:
```sql
{previous_sql}
```

- Câu hỏi hiện tại là modification query: "{query}"
- Giữ nguyên các điều kiện không thay đổi, chỉ sửa phần được đề cập
- PHẢI tạo SQL MỚI dựa trên schema HIỆN TẠI

"""


def build_question_expansion_prompt(
    short_question: str, previous_sql: str, previous_canonical: Optional[str] = None
) -> str:
    previous = f'Câu hỏi trước đó (đầy đủ): "{previous_canonical}"\n' if previous_canonical else ""
    return f"""Bạn là AI Assistant chuyên xử lý câu hỏi người dùng trong ngữ cảnh hội thoại.

Nhiệm vụ: Phân tích câu hỏi hiện tại và SQL query trước đó:
1. Nếu câu hỏi hiện tại đã đầy đủ, tự đứng được → trả về nguyên văn
2. Nếu câu hỏi là modification query (ngắn, cần ngữ cảnh) → viết lại thành câu hỏi đầy đủ

Khi viết lại:
- Bao gồm tất cả điều kiện từ SQL trước đó và áp dụng thay đổi mới
- Câu hỏi phải tự đứng được, viết bằng tiếng Việt tự nhiên

Ví dụ:
- "Tăng thêm 2 triệu" → "Tìm phòng Gò Vấp có chỗ để xe hơi giá dưới 5 triệu" (nếu SQL trước là 3 triệu)
- "Ở quận 1 thôi" → "Tìm phòng quận 1 có giá dưới 4 triệu"

{previous}SQL query trước đó:
```sql
{previous_sql}
```

Câu hỏi hiện tại: "{short_question}"

Chỉ trả về câu hỏi kết quả, không giải thích.
Câu hỏi kết quả (canonical question):"""


# ---------------------------------------------------------------- SQL generation
def _security_block(user_id: Optional[str], user_role: Optional[str], intent_action: Optional[str],
                    where_hint: str) -> str:
    if not user_id:
        return (
            "SECURITY REQUIREMENTS (USER CHƯA ĐĂNG NHẬP):\n"
            "- KHÔNG BAO GIỜ query dữ liệu cá nhân\n"
            "- CHỈ query dữ liệu công khai (rooms, room_requests)\n"
            "- KHÔNG query: rentals, bills, payments, room_bookings\n\n"
        )

    lines = [
        "SECURITY REQUIREMENTS:",
        f"- User ID: {user_id}",
        f"- User Role: {user_role}",
        f"- Intent Action: {intent_action or 'not specified'}",
        f"- Nếu user hỏi về thông tin của chính họ, SELECT từ users WHERE id = '{user_id}'",
    ]
    if intent_action == "own":
        lines += [
            "- BẮT BUỘC filter theo userId để user chỉ truy cập dữ liệu của chính họ",
            f"  * bills/rentals: tenant → rentals.tenant_id = '{user_id}', landlord → rentals.owner_id = '{user_id}'",
            f"  * payments: payments.payer_id = '{user_id}'",
            f"  * buildings (landlord): buildings.owner_id = '{user_id}'",
            f"  * rooms/room_instances (landlord): JOIN rooms → buildings WHERE buildings.owner_id = '{user_id}'",
            f"  * room_bookings: room_bookings.tenant_id = '{user_id}'",
        ]
        if where_hint:
            lines.append(f"- Gợi ý WHERE: {where_hint}")
    else:
        lines.append("- INTENT_ACTION khác own → KHÔNG filter theo owner_id, dữ liệu công khai toàn hệ thống")
    return "\n".join(lines) + "\n\n"


def _error_block(last_error: str, last_sql: str, attempt: int) -> str:
    if not last_error:
        return ""
    previous_sql = f"\n\nSQL CŨ (CÓ LỖI - CẦN SỬA):\n{last_sql}" if last_sql else ""
    return f"""{_RULE}
LỖI TRƯỚC ĐÓ (Attempt {attempt - 1}):
{_RULE}
{last_error}{previous_sql}

HƯỚNG DẪN SỬA LỖI:
1. "relation does not exist": kiểm tra lại tên bảng trong SCHEMA
2. "column does not exist": kiểm tra lại tên cột, dùng alias nếu cần (r.name AS title)
3. "syntax error": kiểm tra cú pháp PostgreSQL, JOIN, WHERE, LIMIT
4. Vi phạm an toàn: chỉ SELECT, không SELECT *, chỉ các bảng trong schema

"""


def build_sql_prompt(
    *,
    query: str,
    schema: str,
    rag_context: str = "",
    recent_messages: str = "",
    user_id: Optional[str] = None,
    user_role: Optional[str] = None,
    intent_action: Optional[str] = None,
    where_hint: str = "",
    canonical_hint: str = "",
    tables_hint: str = "",
    last_error: str = "",
    last_sql: str = "",
    attempt: int = 1,
    limit: int = 50,
) -> str:
    role = (
        "Bạn là chuyên gia SQL PostgreSQL với trách nhiệm bảo mật cao. Hãy tạo câu lệnh SQL chính xác và AN TOÀN"
        if user_id
        else "Bạn là chuyên gia SQL PostgreSQL. Hãy tạo câu lệnh SQL chính xác"
    ) + " dựa trên schema database, ngữ cảnh nghiệp vụ và câu hỏi của người dùng."
    schema_block = f"{rag_context}\n" if rag_context else f"COMPLETE DATABASE SCHEMA:\n{schema}\n\n"
    tables_block = f"BẢNG GỢI Ý (từ Orchestrator): {tables_hint}\n\n" if tables_hint else ""
    canonical_block = f"{canonical_hint}\n" if canonical_hint else ""
    history_block = f"NGỮ CẢNH HỘI THOẠI:\n{recent_messages}\n\n" if recent_messages else ""

    return f"""{role}

{schema_block}{tables_block}{canonical_block}{_security_block(user_id, user_role, intent_action, where_hint)}{history_block}{_error_block(last_error, last_sql, attempt)}Câu hỏi hiện tại: "{query}"

CHECKLIST TRƯỚC KHI TẠO SQL:
1. Tên bảng và tên cột PHẢI tồn tại trong schema (snake_case)
2. JOIN qua khóa ngoại (rooms.building_id = buildings.id), KHÔNG join qua tên
3. Dùng đúng giá trị ENUM (lowercase):
{_ENUM_HINTS}
4. Thống kê → aggregate (COUNT/SUM/AVG); tìm kiếm → danh sách (id, name AS title, ...)
5. Biểu đồ → 2 cột chính: label và value, ORDER BY value DESC LIMIT 10
6. Phủ định ("không", "ngoài", "trừ") → NOT, <>, NOT ILIKE, NOT EXISTS

QUY TẮC:
1. Chỉ trả về câu lệnh SQL, không giải thích
2. Chỉ sử dụng SELECT (không DELETE, UPDATE, INSERT)
3. KHÔNG dùng SELECT *, liệt kê cột cụ thể
4. Thêm LIMIT {limit} cho truy vấn không phải aggregate
5. Canonical SQL (nếu có) chỉ để tham khảo cấu trúc, PHẢI tạo SQL mới theo schema hiện tại

SQL:"""


def build_canonical_hint(mode: str, question: Optional[str], sql: Optional[str], score: float) -> str:
    if not sql:
        return ""
    strength = "rất giống" if mode == "reuse" else "tương tự"
    return (
        f"CANONICAL SQL HINT (câu hỏi {strength}, score={score:.2f}):\n"
        f'Câu hỏi đã lưu: "{question or ""}"\n'
        f"```sql\n{sql}\n```\n"
        "Chỉ dùng để tham khảo, PHẢI điều chỉnh theo câu hỏi hiện tại.\n"
    )


# ---------------------------------------------------------------- result validation
def build_result_validator_prompt(
    *,
    original_query: str,
    canonical_question: str,
    sql: str,
    results_count: int,
    results_preview: str,
    expected_type: str,
) -> str:
    if canonical_question != original_query:
        question_block = (
            f'CÂU HỎI GỐC (ngắn gọn): "{original_query}"\n'
            f'CÂU HỎI ĐÃ ĐƯỢC MỞ RỘNG (dùng để tạo SQL): "{canonical_question}"\n'
            "Validate SQL dựa trên CÂU HỎI ĐÃ ĐƯỢC MỞ RỘNG.\n"
        )
    else:
        question_block = f'CÂU HỎI NGƯỜI DÙNG: "{canonical_question}"\n'

    return f"""Bạn là AI Agent 4 - Result Validator của hệ thống Trustay. Hãy đánh giá xem kết quả SQL có đáp ứng yêu cầu của người dùng không.

{question_block}REQUEST TYPE: {expected_type}
SQL ĐÃ SINH RA:
```sql
{sql}
```

KẾT QUẢ SQL:
- Số lượng kết quả: {results_count}
- Dữ liệu (rút gọn): {results_preview}

QUY TẮC:
1. Sai entity hoàn toàn (hỏi phòng nhưng trả về hóa đơn) → ERROR
2. Thiếu filter bảo mật khi hỏi "của tôi" → ERROR
3. Kết quả sai hoàn toàn (tìm quận 1 mà ra quận 2) → ERROR
4. Thiếu filter nhỏ hoặc gần đúng → WARN (vẫn hợp lệ)
5. SQL đúng nhưng không có dữ liệu → hợp lệ

Trả về theo format:
IS_VALID: true/false
SEVERITY: ERROR/WARN
VIOLATIONS: [danh sách vi phạm, cách nhau bởi dấu phẩy]
REASON: [lý do nếu invalid, hoặc "OK"]
EVALUATION: [đánh giá ngắn gọn về SQL và kết quả]"""


# ---------------------------------------------------------------- response generation
def _structured_block(structured: Optional[Mapping[str, Any]]) -> str:
    if not structured:
        return ""
    list_value = structured.get("list")
    return (
        "DỮ LIỆU ĐÃ ĐƯỢC XỬ LÝ:\n"
        f"- LIST: {f'{len(list_value)} items' if list_value is not None else 'null'}\n"
        f"- TABLE: {'có dữ liệu' if structured.get('table') is not None else 'null'}\n"
        f"- CHART: {'có dữ liệu' if structured.get('chart') is not None else 'null'}\n\n"
    )


def build_final_message_prompt(
    *,
    conversational_message: str,
    count: int,
    data_preview: str,
    recent_messages: str = "",
    session_summary: str = "",
    structured: Optional[Mapping[str, Any]] = None,
) -> str:
    summary_block = f"TÓM TẮT CUỘC HỘI THOẠI:\n{session_summary}\n\n" if session_summary else ""
    history_block = f"NGỮ CẢNH HỘI THOẠI:\n{recent_messages}\n\n" if recent_messages else ""
    return f"""Bạn là AI assistant của Trustay. Hãy viết CHỈ MỘT thông điệp thân thiện cho người dùng, kết hợp ngữ cảnh hội thoại và kết quả truy vấn.

{summary_block}{history_block}THÔNG ĐIỆP TỪ ORCHESTRATOR AGENT: "{conversational_message}"
SỐ KẾT QUẢ: {count}
DỮ LIỆU (rút gọn): {data_preview}
{_structured_block(structured)}
YÊU CẦU:
1. Chỉ trả về nội dung tin nhắn (Markdown an toàn), KHÔNG JSON, KHÔNG HTML.
2. Tiếng Việt tự nhiên, ấm áp, súc tích. Mở đầu bằng 1-2 câu hữu ích.
3. Không dùng tiêu đề lớn hay ký tự #. Không hiển thị SQL query.
4. Khi đã có LIST/TABLE/CHART, chỉ mô tả ngắn gọn, KHÔNG tạo markdown table.
5. Nếu không có kết quả, đưa ra gợi ý hữu ích.

CHỈ TRẢ VỀ NỘI DUNG TIN NHẮN:"""


def build_insight_prompt(
    *,
    conversational_message: str,
    data: str,
    recent_messages: str = "",
) -> str:
    history_block = f"NGỮ CẢNH:\n{recent_messages}\n\n" if recent_messages else ""
    return f"""Bạn là AI assistant của Trustay. Phân tích CHI TIẾT phòng trọ với SỐ LIỆU CỤ THỂ từ dữ liệu.

{history_block}THÔNG ĐIỆP: "{conversational_message}"
DỮ LIỆU PHÒNG: {data}

QUY TẮC:
1. Bắt đầu ngay với số liệu cụ thể: diện tích, địa chỉ, giá thuê
2. Tính giá/m² và tổng chi phí (giá thuê + dịch vụ + điện + nước + internet + dọn dẹp)
3. Liệt kê đầy đủ tiện ích, so sánh giá với tiện ích và khu vực
4. Kết luận rõ ràng: giá hợp lý hay không, kèm lý do bằng số liệu
5. Dùng **bold** cho số liệu quan trọng, bullet points cho tiện ích
6. KHÔNG nói chung chung, KHÔNG viết "Mình đã tìm thấy", "Bạn thấy sao"

TRẢ VỀ: Markdown 300-400 từ."""


def build_column_labels_prompt(keys: Iterable[str]) -> str:
    key_list = ", ".join(f'"{key}"' for key in keys)
    return (
        "Dịch các tên cột database (snake_case, tiếng Anh) sau sang nhãn tiếng Việt ngắn gọn, dễ hiểu "
        "cho người dùng không chuyên kỹ thuật.\n"
        f"Các cột: [{key_list}]\n\n"
        'Chỉ trả về một JSON object dạng {"tên_cột": "Nhãn tiếng Việt"}, không giải thích.'
    )


def no_results_message(query: Optional[str] = None) -> str:
    if query:
        return f'Tôi không tìm thấy kết quả nào cho câu hỏi "{query}". Bạn có thể thử hỏi theo cách khác không?'
    return "Tôi đã tìm kiếm nhưng không thấy kết quả nào phù hợp. Bạn có thể thử hỏi theo cách khác không? 🤔"


def success_message(count: int, query: Optional[str] = None) -> str:
    if query:
        return f'Tôi đã tìm thấy {count} kết quả cho câu hỏi của bạn về "{query}".'
    return f"Tôi đã tìm thấy {count} kết quả cho bạn! 😊"


# ---------------------------------------------------------------- summary
_INCOMPLETE_ENDINGS = "của, và, hoặc, với, cho, từ, đến, trong, ngoài, theo, về"


def build_title_prompt(first_user_message: str, first_ai_message: Optional[str] = None) -> str:
    reply_block = f'\nCâu trả lời đầu tiên của AI:\n"{first_ai_message}"\n' if first_ai_message else ""
    return f"""Bạn là một AI Assistant chuyên tạo tiêu đề mô tả cho các cuộc hội thoại.

Nhiệm vụ: Tạo một tiêu đề có ý nghĩa (8-15 từ hoặc 50-100 ký tự) mô tả nội dung chính của câu hỏi đầu tiên.

Yêu cầu:
- Viết bằng tiếng Việt, không có dấu chấm câu ở cuối
- Bao gồm entity, hành động và điều kiện quan trọng nếu có
- KHÔNG kết thúc bằng các từ chưa đầy đủ như {_INCOMPLETE_ENDINGS}

Ví dụ tốt:
- "Tìm phòng trọ giá rẻ tại quận Gò Vấp"
- "Thống kê số lượng phòng trống theo quận"

Câu hỏi đầu tiên của người dùng:
"{first_user_message}"
{reply_block}
Tiêu đề:"""


def build_rolling_summary_prompt(
    existing_summary: Optional[str], old_messages: Iterable[Mapping[str, Any]]
) -> str:
    messages_text = "\n\n".join(
        f"{agent_config.label_user if m.get('role') == 'user' else agent_config.label_ai}: {m.get('content', '')}"
        for m in old_messages
    )
    summary_block = f'Tóm tắt hiện tại của cuộc hội thoại:\n"{existing_summary}"\n\n' if existing_summary else ""
    return f"""Bạn là một AI Assistant chuyên tóm tắt các cuộc hội thoại dài để duy trì context.

Nhiệm vụ: Dựa trên tóm tắt hiện tại (nếu có) và đoạn hội thoại mới, cập nhật bản tóm tắt các ý chính, entity và intent của người dùng.

Yêu cầu:
- Giữ lại thông tin quan trọng từ tóm tắt cũ, bổ sung thông tin mới
- Tập trung vào: ý định chính, entity được đề cập, filter quan trọng (giá, địa điểm)
- Độ dài tối đa {agent_config.summary_max_words} từ, viết bằng tiếng Việt

{summary_block}Đoạn hội thoại mới cần được tóm tắt:
{messages_text}

Tóm tắt cập nhật:"""

