from enum import StrEnum


class BookingScope(StrEnum):
    # Front desk scopes
    READ = "bookings:read"  # view bookings and the day board
    WRITE = "bookings:write"  # quote and create bookings
    MANAGE = "bookings:manage"  # move bookings through the status workflow

    # Floor staff scopes
    SERVE = "services:work"  # claim / serve own service instances
    SERVE_ANY = "services:manage"  # unclaim / unserve on behalf of other staff

    # Back office scopes
    COMMISSIONS_READ = "commissions:read"
    COMMISSIONS_MANAGE = "commissions:manage"  # revert and sweep commissions
    PAYROLL = "payroll:manage"  # attendance, payslips, sales reports
    SESSIONS_READ = "sessions:read"
    SESSIONS_WRITE = "sessions:write"
    VOUCHERS = "vouchers:manage"
    DISCOUNTS = "discounts:manage"

    # Admin scopes
    ADMIN = "admin:bookings"
    ADMIN_DELETE = "admin:bookings:delete"


BOOKING_SCOPE_DESCRIPTIONS: dict[str, str] = {
    BookingScope.READ: "View bookings and the daily booking board.",
    BookingScope.WRITE: "Quote prices and create new bookings.",
    BookingScope.MANAGE: "Confirm, start, complete, mark paid, cancel or no-show bookings.",
    BookingScope.SERVE: "Claim and serve your own service instances.",
    BookingScope.SERVE_ANY: "Unclaim or unserve service instances held by other staff.",
    BookingScope.COMMISSIONS_READ: "View commission transactions.",
    BookingScope.COMMISSIONS_MANAGE: "Re-evaluate, revert and sweep commissions.",
    BookingScope.PAYROLL: "Record attendance, release payslips and read sales summaries.",
    BookingScope.SESSIONS_READ: "View multi-visit appointment sessions.",
    BookingScope.SESSIONS_WRITE: "Start sessions, link bookings and record visits.",
    BookingScope.VOUCHERS: "Issue and check vouchers.",
    BookingScope.DISCOUNTS: "Create and cancel the store-wide discount.",
    BookingScope.ADMIN: "Full access to every booking operation (admin).",
    BookingScope.ADMIN_DELETE: "Hard-delete any booking (admin).",
}
