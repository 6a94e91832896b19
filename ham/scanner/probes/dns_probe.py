# ham/scanner/probes/dns_probe.py
"""
DNS resolution probe.

Asks one specific resolver for one name. The config layer fans a target
with several resolvers out into one TestTarget per resolver, so a cycle holds
one sample per resolver and the correlator can compare their answers.

Uses dnspython with an explicit resolver (no /etc/resolv.conf), the same
way the email-security tool builds its resolvers.

Target:
    host                the domain being resolved
    params.resolver     resolver address (required)
    params.query_type   record type, default "A"

Metadata:
    resolver, domain, query_type, rcode, answers (sorted text form)

An NXDOMAIN or SERVFAIL answer is returned as a failed result with
error=dns_failure that still carries rcode and answers, so a resolver that
lies with NXDOMAIN is visible to the answer comparison.
"""

from __future__ import annotations

import logging
import time

import dns.exception
import dns.rcode
import dns.resolver

from ham.errors import ProbeConnectionError, ProbeTimeout
from ham.scanner.base import BaseProbe, ErrorKind, ProbeResult, TestTarget

logger = logging.getLogger(__name__)


def _make_resolver(nameserver: str, timeout: float) -> dns.resolver.Resolver:
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = [nameserver]
    resolver.timeout = timeout
    resolver.lifetime = timeout
    return resolver


class DNSProbe(BaseProbe):

    @property
    def name(self) -> str:
        return "dns"

    def test(self, target: TestTarget, timeout: float) -> ProbeResult:
        nameserver = target.param("resolver")
        if not nameserver:
            raise ValueError(f"DNS target {target.host} has no resolver")

        resolver = _make_resolver(str(nameserver), timeout)
        facts = {"resolver": str(nameserver), "domain": target.host, "query_type": target.query_type}

        start = time.monotonic()
        try:
            answer = resolver.resolve(target.host, target.query_type, raise_on_no_answer=False)
        except dns.resolver.NXDOMAIN:
            return self._dns_failure(target, start, "NXDOMAIN", facts)
        except dns.resolver.NoNameservers as e:
            return self._dns_failure(target, start, "SERVFAIL", facts, detail=str(e))
        except dns.exception.Timeout as e:
            raise ProbeTimeout(f"resolver {nameserver} did not answer for {target.host}") from e
        except OSError as e:
            raise ProbeConnectionError(f"resolver {nameserver} unreachable: {e}", kind="unreachable") from e

        latency_ms = (time.monotonic() - start) * 1000
        answers = sorted(rr.to_text() for rr in answer.rrset) if answer.rrset is not None else []
        return self.ok(
            target,
            latency_ms,
            rcode=dns.rcode.to_text(answer.response.rcode()),
            answers=tuple(answers),
            **facts,
        )

    def _dns_failure(self, target: TestTarget, start: float, rcode: str,
                     facts: dict, detail: str = "") -> ProbeResult:
        return ProbeResult(
            protocol=self.name,
            success=False,
            latency_ms=round((time.monotonic() - start) * 1000, 2),
            error=ErrorKind.DNS_FAILURE,
            error_detail=detail or f"{rcode} from {facts['resolver']}",
            metadata={"rcode": rcode, "answers": (), **facts},
            target=target,
        )
