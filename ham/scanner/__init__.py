# ham/scanner/__init__.py
"""
HAM diagnosis engine

Usage:
    from ham import CoreConfig, ScanOrchestrator

    orchestrator = ScanOrchestrator(CoreConfig.from_mapping(raw_config))
    outcome = orchestrator.run_cycle()
    print(outcome.diagnosis.to_json())

Architecture:
    ScanOrchestrator
    ├── Probes (measure one protocol against one target)
    │   ├── TCPProbe / IPv6Probe   TCP connect latency
    │   ├── UDPProbe               datagram loss (DNS / NTP / raw)
    │   ├── DNSProbe               per-resolver answers (dnspython)
    │   ├── TLSProbe               handshake with explicit SNI
    │   ├── HTTPSProbe             fetch + block-page detection (httpx)
    │   ├── ICMPProbe              system ping, per-sequence replies
    │   ├── QUICProbe              version-negotiation reachability
    │   └── Upload/DownloadProbe   throughput (httpx)
    │
    ├── Scorers (ProbeResult → 0..10 ProtocolScore)
    │
    ├── Correlator (rule table → PatternIndicators)
    │   └── Analyzers (NullAnalyzer, LogisticAnalyzer)
    │
    ├── Reasoner (→ NetworkDiagnosis)
    │
    └── TemporalStore (bounded history, single writer)

ScanOrchestrator is exported from the top-level `ham` package; importing it
here would make ham.config → ham.scanner.base circular.
"""
