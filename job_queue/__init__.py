"""
Outbound queue — per-recipient FIFO with lease-based exclusion.

- Triggers ENQUEUE messages (availability asks, bookings, reminders, chases)
- A drain SENDS them one at a time per recipient through the channel gateway
- Leases live in the availability store (default) or Redis
"""
