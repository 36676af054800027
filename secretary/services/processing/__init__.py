"""Recording processing: state machine, transition authority and queue driver."""
