from nodefleet.UTILS.port_finder import is_port_free, parse_host_ports


def test_parse_host_ports():
    field = "0.0.0.0:30303-30304->30303-30304/tcp, :::8545->8545/tcp, 127.0.0.1:5052->5052/tcp, 9000/udp"
    assert parse_host_ports(field) == {30303, 30304, 8545, 5052}


def test_parse_host_ports_empty():
    assert parse_host_ports("") == set()
    assert parse_host_ports(None) == set()


def test_is_port_free_rejects_out_of_range():
    assert is_port_free(0) is False
    assert is_port_free(70000) is False
