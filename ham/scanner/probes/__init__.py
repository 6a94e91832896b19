# ham/scanner/probes/__init__.py
"""
Built-in protocol probes.
Each probe measures a single protocol against a single target.
Probes do NOT judge censorship; they only report what happened.
"""
from ham.scanner.probes.tcp_probe import TCPProbe, IPv6Probe
from ham.scanner.probes.udp_probe import UDPProbe
from ham.scanner.probes.dns_probe import DNSProbe
from ham.scanner.probes.tls_probe import TLSProbe
from ham.scanner.probes.https_probe import HTTPSProbe
from ham.scanner.probes.icmp_probe import ICMPProbe
from ham.scanner.probes.quic_probe import QUICProbe
from ham.scanner.probes.bandwidth_probe import UploadProbe, DownloadProbe

# Registry of all built-in probes.
# The default ProbeRegistry is seeded from this.
ALL_PROBES = {
    "tcp": TCPProbe,
    "ipv6": IPv6Probe,
    "udp": UDPProbe,
    "dns": DNSProbe,
    "tls": TLSProbe,
    "https": HTTPSProbe,
    "icmp": ICMPProbe,
    "quic": QUICProbe,
    "upload": UploadProbe,
    "download": DownloadProbe,
}

__all__ = [
    "TCPProbe", "IPv6Probe", "UDPProbe", "DNSProbe", "TLSProbe",
    "HTTPSProbe", "ICMPProbe", "QUICProbe", "UploadProbe", "DownloadProbe",
    "ALL_PROBES",
]
