"""
moqt_interop -- MoQT relay interop test client.

Connects to a relay, runs a fixed catalogue of session scenarios and streams
the results as TAP version 14.

Public API
    Harness:
      REGISTRY, SKIP_POLICY  -- scenario catalogue and skip reasons
      select_scenarios       -- all scenarios, or one by name
      run_scenarios          -- drive scenarios and report them
      TapReporter            -- TAP 14 writer

    Session client:
      Client, ClientConfig   -- aioquic-based MOQT session factory
      Origin, Broadcast, Track

    Tools:
      MOQTRelay              -- loopback relay for local runs and self-tests
      parse_tap              -- count results in a TAP log
      ensure_dev_certs       -- self-signed cert for a local relay
"""

CLIENT_NAME = "moqt-interop"
__version__ = "0.1.0"

from .certs import ensure_dev_certs
from .client import Client, ClientConfig, CloseCode, ConnectFailure, Session
from .origin import Announcement, Broadcast, Origin, Track, TrackError
from .relay import MOQTRelay
from .report import Diagnostics, Outcome, Status, TapReporter
from .runner import run_scenarios
from .scenarios import (
    REGISTRY,
    SKIP_POLICY,
    ProtocolFailure,
    ScenarioContext,
    ScenarioSpec,
    SkipEntry,
    UnknownScenario,
    select_scenarios,
)
from .supervisor import MissingScenarioBody, ScenarioTimeout, race
from .tap import parse_tap

__all__ = [
    "CLIENT_NAME",
    "REGISTRY",
    "SKIP_POLICY",
    "Announcement",
    "Broadcast",
    "Client",
    "ClientConfig",
    "CloseCode",
    "ConnectFailure",
    "Diagnostics",
    "MOQTRelay",
    "MissingScenarioBody",
    "Origin",
    "Outcome",
    "ProtocolFailure",
    "ScenarioContext",
    "ScenarioSpec",
    "ScenarioTimeout",
    "Session",
    "SkipEntry",
    "Status",
    "TapReporter",
    "Track",
    "TrackError",
    "UnknownScenario",
    "ensure_dev_certs",
    "parse_tap",
    "race",
    "run_scenarios",
    "select_scenarios",
]
