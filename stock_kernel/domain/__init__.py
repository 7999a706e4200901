"""Pure domain layer: clock, enums, DTOs and order state machines."""
