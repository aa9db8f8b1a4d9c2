"""
Unit tests for guest address discovery.
"""

from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

import pytest

from hobo.errors import AddressUnresolvedError, ExternalToolError, LeaseNotFoundError
from hobo.hypervisor import Hypervisor
from hobo.network import NetworkAddressResolver, find_lease, read_mac_address
from hobo.registry import Instance

from conftest import GUEST_IP, SAMPLE_VMX

MAC = "00:0c:29:ff:94:8f"

LEASES = """# All times in this file are in UTC (GMT), not your local timezone.
lease 192.168.254.130 {
  starts 4 2019/10/17 18:01:02;
  ends 4 2019/10/17 18:31:02;
  hardware ethernet 00:0c:29:ff:94:8f;
}
lease 192.168.254.131 {
  starts 4 2019/10/17 18:05:00;
  hardware ethernet 00:0c:29:aa:bb:cc;
}
lease 192.168.254.169 {
  starts 5 2019/10/18 09:00:00;
  hardware ethernet 00:0C:29:FF:94:8F;
  client-hostname "demo";
}
"""


@pytest.fixture
def lease_file(temp_home_dir: Path) -> Path:
    path = temp_home_dir / "leases"
    path.write_text(LEASES)
    return path


@pytest.fixture
def instance(temp_home_dir: Path) -> Instance:
    vm_dir = temp_home_dir / "vms" / "demo-1.vmwarevm"
    vm_dir.mkdir(parents=True)
    inst = Instance("demo-1", vm_dir)
    inst.vmx_file.write_text(SAMPLE_VMX)
    return inst


@pytest.fixture
def hypervisor() -> Mock:
    hypervisor = Mock(spec=Hypervisor)
    hypervisor.guest_ip_address.return_value = GUEST_IP + "\n"
    return hypervisor


@pytest.fixture
def resolver(hypervisor, lease_file) -> NetworkAddressResolver:
    return NetworkAddressResolver(hypervisor, lease_file)


@pytest.mark.unit
class TestLeaseParsing:
    """Test vmx and dhcp lease file parsing."""

    def test_read_mac_address(self, instance):
        """Test the exact key is matched and the value is lowercased."""
        assert read_mac_address(instance.vmx_file) == MAC

    def test_read_mac_address_missing(self, temp_home_dir):
        vmx = temp_home_dir / "bare.vmx"
        vmx.write_text('displayName = "bare"\nethernet0.generatedAddressOffset = "0"\n')

        with pytest.raises(AddressUnresolvedError):
            read_mac_address(vmx)

    def test_later_lease_wins(self, lease_file):
        """Test the last block for a mac address shadows earlier ones."""
        assert find_lease(lease_file, MAC) == "192.168.254.169"

    def test_lease_mac_case_insensitive(self, lease_file):
        assert find_lease(lease_file, MAC.upper()) == "192.168.254.169"

    def test_no_matching_lease(self, lease_file):
        """Test an unknown mac address is a distinct, retryable error."""
        with pytest.raises(LeaseNotFoundError) as exc_info:
            find_lease(lease_file, "00:0c:29:00:00:01")
        assert isinstance(exc_info.value, AddressUnresolvedError)
        assert exc_info.value.mac_addr == "00:0c:29:00:00:01"


@pytest.mark.unit
class TestNetworkAddressResolver:
    """Test address resolution strategies."""

    def test_resolve_prefers_recorded_address(self, resolver, instance, hypervisor):
        instance.ip_addr = "10.0.0.7"

        assert resolver.resolve(instance) == "10.0.0.7"
        hypervisor.guest_ip_address.assert_not_called()

    def test_resolve_asks_tools(self, resolver, instance, hypervisor):
        assert resolver.resolve(instance) == GUEST_IP
        hypervisor.guest_ip_address.assert_called_once_with(instance.vmx_file)

    def test_query_tools_rejects_garbage(self, resolver, instance, hypervisor):
        """Test tools output that is not an address is reported as unresolved."""
        hypervisor.guest_ip_address.return_value = "Error: The VMware Tools are not running\n"

        with pytest.raises(AddressUnresolvedError):
            resolver.query_tools(instance)

    def test_query_tools_empty_output(self, resolver, instance, hypervisor):
        hypervisor.guest_ip_address.return_value = ""

        with pytest.raises(AddressUnresolvedError):
            resolver.query_tools(instance)

    @patch("hobo.network.time")
    @patch("hobo.network.find_lease")
    def test_poll_lease_retries_until_found(self, mock_find, mock_time, resolver, instance):
        """Test a missing lease is retried after a short sleep."""
        mock_find.side_effect = [LeaseNotFoundError(MAC), LeaseNotFoundError(MAC), "192.168.254.169"]

        assert resolver.poll_lease(instance) == "192.168.254.169"
        assert mock_find.call_count == 3
        assert mock_time.sleep.call_count == 2
        mock_time.sleep.assert_called_with(0.5)

    @patch("hobo.network.time")
    @patch("hobo.network.find_lease")
    def test_poll_lease_deadline(self, mock_find, mock_time, resolver, instance):
        """Test polling gives up once the deadline has passed."""
        mock_find.side_effect = LeaseNotFoundError(MAC)
        mock_time.monotonic.return_value = 100.0

        with pytest.raises(AddressUnresolvedError) as exc_info:
            resolver.poll_lease(instance, deadline=50.0)

        assert not isinstance(exc_info.value, LeaseNotFoundError)
        mock_time.sleep.assert_not_called()

    @patch("hobo.network.socket.create_connection")
    def test_wait_for_reachable(self, mock_connect, resolver):
        mock_connect.return_value = MagicMock()

        assert resolver.wait_for_reachable(GUEST_IP) is True
        mock_connect.assert_called_once_with((GUEST_IP, 22), timeout=1)

    @patch("hobo.network.time")
    @patch("hobo.network.socket.create_connection")
    def test_wait_for_reachable_timeout(self, mock_connect, mock_time, resolver):
        """Test attempts stop after the default 30 seconds."""
        mock_connect.side_effect = ConnectionRefusedError("refused")
        # deadline computation, then one check per loop iteration
        mock_time.monotonic.side_effect = [0.0, 0.0, 10.0, 31.0]

        assert resolver.wait_for_reachable(GUEST_IP) is False
        assert mock_connect.call_count == 2
        mock_time.sleep.assert_called_with(1)

    def test_acquire_tools_then_reachable(self, resolver, instance):
        with patch.object(resolver, "wait_for_reachable", return_value=True) as mock_wait:
            assert resolver.acquire(instance, deadline=42.0) == GUEST_IP
        mock_wait.assert_called_once_with(GUEST_IP, 42.0)

    def test_acquire_falls_back_to_leases(self, resolver, instance, hypervisor):
        """Test a failing tools query falls back to the lease file."""
        hypervisor.guest_ip_address.side_effect = ExternalToolError(["vmrun"], 255, "Error")

        with patch.object(resolver, "wait_for_reachable", return_value=True):
            assert resolver.acquire(instance) == "192.168.254.169"

    def test_acquire_requeries_tools_when_unreachable(self, resolver, instance, hypervisor):
        """Test an unreachable lease address is replaced by what tools reports."""
        hypervisor.guest_ip_address.side_effect = [
            ExternalToolError(["vmrun"], 255, "Error"),
            "192.168.254.200\n",
        ]

        with patch.object(resolver, "wait_for_reachable", return_value=False):
            assert resolver.acquire(instance) == "192.168.254.200"
        assert hypervisor.guest_ip_address.call_count == 2
