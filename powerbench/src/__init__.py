"""
Test-bench power control and safety monitoring package.

Switches and meters appliance outlets through network-controllable power
controllers (HTTP relays, HTTP energy monitors, SNMP PDUs, or a human
operator), persists per-run power readings, and de-energizes an outlet when
a run exceeds its safety thresholds.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""
