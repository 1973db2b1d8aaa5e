"""Vietnamese business narrative ingested into the ``docs`` collection."""

BUSINESS_CONTEXT = """
CHƯƠNG 1 Giới thiệu
Trustay là nền tảng quản lý và tìm kiếm phòng trọ. Người dùng gồm Chủ trọ (landlord), Người thuê (tenant) và Khách chưa đăng nhập.
Nghiệp vụ chính: tìm kiếm phòng, yêu cầu thuê, lời mời thuê, hợp đồng điện tử, hoá đơn và thanh toán, nhắn tin.
Trợ lý AI Text2SQL cho phép hỏi bằng tiếng Việt tự nhiên, ví dụ "phòng trọ ở Gò Vấp dưới 3 triệu" hoặc "doanh thu tháng này".

CHƯƠNG 2 Chức năng theo vai trò
2.1 Chức năng chung
- Đăng ký, đăng nhập, quản lý thông tin cá nhân
- Tìm kiếm và xem chi tiết phòng trọ, bài đăng tìm trọ, bài đăng tìm người ở ghép
2.2 Chủ trọ
- Quản lý toà nhà (buildings), loại phòng (rooms) và phòng cụ thể (room_instances)
- Duyệt hoặc từ chối yêu cầu thuê (room_bookings), gửi lời mời thuê (room_invitations)
- Quản lý hợp đồng (contracts), hoá đơn (bills) và xác nhận thanh toán (payments)
- Xem thống kê doanh thu, tỉ lệ lấp đầy, hoá đơn quá hạn
2.3 Người thuê
- Gửi yêu cầu thuê, ký hợp đồng điện tử
- Xem chỗ đang thuê (rentals), hoá đơn và lịch sử thanh toán của chính mình
- Đăng tin tìm trọ (room_requests) và tìm người ở ghép (roommate_seeking_posts)

CHƯƠNG 3 Luồng nghiệp vụ
3.1 Đăng tài sản
- Chủ trọ tạo Building, sau đó tạo Room (loại phòng) và các RoomInstance (phòng 101, 102, ...)
- Giá thuê nằm ở room_pricing.base_price_monthly, không có cột price trên bảng rooms
3.2 Yêu cầu và lời mời
- RoomBooking: người thuê gửi yêu cầu thuê tới chủ trọ
- RoomInvitation: chủ trọ mời người thuê
- RoommateApplication: người thuê ứng tuyển ở ghép vào một RoommateSeekingPost
3.3 Chỗ thuê và hợp đồng
- Khi yêu cầu hoặc lời mời được chấp nhận, hệ thống tạo Rental gắn tenant, owner và room_instance
- Contract (hợp đồng điện tử) có thể được tạo kèm theo Rental
3.4 Hoá đơn và thanh toán
- Bill được lập theo kỳ (billing_month, billing_year, period_start, period_end)
- BillItem tổng hợp tiền phòng, điện nước, dịch vụ từ room_costs và room_pricing
- Payment là khoản thanh toán của người thuê (payer_id) cho Bill hoặc Rental

CHƯƠNG 4 Quan hệ dữ liệu then chốt
- buildings.owner_id → users.id
- rooms.building_id → buildings.id; room_instances.room_id → rooms.id
- room_bookings.room_id → rooms.id; room_invitations.room_id → rooms.id
- rentals.room_instance_id → room_instances.id; rentals.tenant_id và rentals.owner_id → users.id
- bills.rental_id → rentals.id; payments.rental_id → rentals.id; payments.bill_id → bills.id
- buildings.district_id → districts.id; districts.province_id → provinces.id

CHƯƠNG 5 Quy tắc truy vấn
- Phòng đang hiển thị: rooms.is_active = true và buildings.is_active = true
- Tìm theo khu vực: JOIN districts và lọc district_name ILIKE '%tên quận%'
- Dữ liệu nhạy cảm (rentals, bills, payments) phải lọc theo người dùng hiện tại: tenant_id, owner_id hoặc payer_id
- Thống kê doanh thu chỉ dành cho chủ trọ và chỉ trên toà nhà của họ
"""
