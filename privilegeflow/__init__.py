"""
PrivilegeFlow Clinical Privileging Workflow Engine
==================================================

A Python engine for hospital clinical-privileging workflows.  Practitioners
request clinical privileges and a chain of role-based reviewers approves or
rejects them.  The engine computes the reviewer chain at submission time,
advances requests through it as decisions arrive, and tracks how long each
pending decision has been waiting so unresponsive reviewers are escalated.

Page rendering, document storage, certificate rendering, HR synchronization
and notification delivery are external collaborators.  This package only
decides *who* must review a request, *whether* a reviewer may act on it now,
and *what* the aggregate request status is.
"""

__version__ = "0.1.0"
