"""Table-session billing: clock, charge calculation and session transitions.

Everything in this package is pure: functions take the current instant and
the applicable rate plan as arguments and return new immutable values. The
sync layer and the HTTP routes import from here, keeping transport and
persistence concerns out of the billing rules.
"""
