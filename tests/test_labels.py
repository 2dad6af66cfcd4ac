import logging

import pytest

from dockserve import labels
from dockserve.errors import (
    InvalidFunnelPort,
    InvalidPort,
    InvalidProtocol,
    InvalidServiceName,
    MissingRequiredField,
)
from dockserve.labels import EndpointRule, default_service_endpoint
from dockserve.mesh import build_destination, service_target
from fakes import make_container, web_labels


def interpret(lbls, **kwargs):
    _, insp = make_container("web", lbls, **kwargs)
    return labels.interpret(lbls, insp, ("tag:container",))


def test_not_enabled_returns_none():
    lbls = web_labels("web", 8080)
    lbls[labels.LABEL_ENABLE] = "false"
    assert interpret(lbls) is None
    # only the literal "true" opts in
    lbls[labels.LABEL_ENABLE] = "TRUE"
    assert interpret(lbls) is None


def test_web_container_defaults():
    svc = interpret(web_labels("web", 8080))

    assert svc.service_name == "svc:web"
    assert svc.backend_protocol == "http"
    assert svc.service_protocol == "http"
    assert svc.service_port == 80
    assert (svc.dest_ip, svc.dest_port) == ("172.17.0.5", 8080)
    assert service_target(svc) == "http://172.17.0.5:8080"
    assert svc.tags == ("tag:container",)
    assert svc.funnel is None


def test_https_backend_on_443_defaults_to_https_service():
    svc = interpret(web_labels("secure", 443))

    assert svc.backend_protocol == "https"
    assert svc.service_protocol == "https"
    assert svc.service_port == 443
    assert service_target(svc) == "https://172.17.0.5:443"


@pytest.mark.parametrize("port", [80, 3000, 8080, 8443])
def test_backend_protocol_defaults_to_http_off_443(port):
    assert labels.default_backend_protocol(port) == "http"


def test_service_name_is_normalised():
    assert labels.service_name_for("web") == "svc:web"
    assert labels.service_name_for("svc:web") == "svc:web"
    assert labels.service_name_for("  api-2 ") == "svc:api-2"


@pytest.mark.parametrize("raw", ["Web", "web_1", "-web", "svc:", "a" * 64])
def test_invalid_service_name(raw):
    with pytest.raises(InvalidServiceName):
        labels.service_name_for(raw)


@pytest.mark.parametrize(
    "backend,backend_port,port,protocol,expected",
    [
        ("tcp", 5432, None, None, (80, "tcp", EndpointRule.TCP_BACKEND)),
        ("tls-terminated-tcp", 5432, None, None, (80, "tls-terminated-tcp", EndpointRule.TCP_BACKEND)),
        ("https", 443, None, None, (443, "https", EndpointRule.HTTPS_BACKEND)),
        ("https", 8443, None, None, (80, "http", EndpointRule.HTTP_DEFAULT)),
        ("http", 8080, None, None, (80, "http", EndpointRule.HTTP_DEFAULT)),
        ("http", 8080, None, "https", (443, "https", EndpointRule.PORT_FROM_PROTOCOL)),
        ("http", 8080, None, "tcp", (80, "tcp", EndpointRule.PORT_FROM_PROTOCOL)),
        ("tcp", 5432, 5432, None, (5432, "tcp", EndpointRule.PROTOCOL_FROM_BACKEND)),
        ("http", 8080, 443, None, (443, "https", EndpointRule.PROTOCOL_FROM_PORT)),
        ("http", 8080, 8000, None, (8000, "http", EndpointRule.PROTOCOL_FROM_PORT)),
        ("http", 8080, 8443, "https", (8443, "https", EndpointRule.EXPLICIT)),
    ],
)
def test_service_endpoint_decision_table(backend, backend_port, port, protocol, expected):
    ep = default_service_endpoint(backend, backend_port, port, protocol)
    assert (ep.port, ep.protocol, ep.rule) == expected


def test_tcp_backend_never_becomes_http():
    svc = interpret(web_labels("db", 5432, **{labels.LABEL_TARGET_PROTOCOL: "tcp"}))
    assert svc.service_protocol == "tcp"
    assert service_target(svc) == "tcp://172.17.0.5:5432"


def test_tls_terminated_backend_is_forwarded_as_tcp():
    svc = interpret(
        web_labels(
            "db",
            5432,
            **{labels.LABEL_TARGET_PROTOCOL: "tls-terminated-tcp", labels.LABEL_PORT: "5432"},
        )
    )
    assert svc.service_protocol == "tls-terminated-tcp"
    assert service_target(svc) == "tcp://172.17.0.5:5432"


def test_https_insecure_backend_keeps_scheme():
    svc = interpret(web_labels("admin", 9443, **{labels.LABEL_TARGET_PROTOCOL: "https+insecure"}))
    assert service_target(svc) == "https+insecure://172.17.0.5:9443"


@pytest.mark.parametrize("missing", [labels.LABEL_SERVICE, labels.LABEL_TARGET_PORT])
def test_missing_required_label(missing):
    lbls = web_labels("web", 8080)
    del lbls[missing]
    with pytest.raises(MissingRequiredField) as exc:
        interpret(lbls)
    assert exc.value.label == missing


def test_blank_label_counts_as_missing():
    lbls = web_labels("web", 8080)
    lbls[labels.LABEL_SERVICE] = "   "
    with pytest.raises(MissingRequiredField):
        interpret(lbls)


@pytest.mark.parametrize("raw", ["abc", "0", "70000", "80.5"])
def test_invalid_ports(raw):
    with pytest.raises(InvalidPort):
        interpret(web_labels("web", 8080, **{labels.LABEL_PORT: raw}))


def test_invalid_backend_protocol():
    with pytest.raises(InvalidProtocol, match="ftp"):
        interpret(web_labels("web", 8080, **{labels.LABEL_TARGET_PROTOCOL: "ftp"}))


def test_https_insecure_is_not_a_service_protocol():
    with pytest.raises(InvalidProtocol):
        interpret(web_labels("web", 8080, **{labels.LABEL_SERVICE_PROTOCOL: "https+insecure"}))


def test_tags_from_label():
    svc = interpret(web_labels("web", 8080, **{labels.LABEL_TAGS: " tag:web , ,tag:prod"}))
    assert svc.tags == ("tag:web", "tag:prod")


def test_tag_without_prefix_is_kept_with_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="dockserve.labels"):
        tags = labels.parse_tags("web,tag:ok", ("tag:container",), "web")
    assert tags == ("web", "tag:ok")
    assert "should start with" in caplog.text


def test_empty_tags_fall_back_to_defaults():
    assert labels.parse_tags("", ("tag:a", "tag:b")) == ("tag:a", "tag:b")
    assert labels.parse_tags(None, ()) == ()


# --- funnel ---------------------------------------------------------------


def funnel_labels(**extra):
    lbls = web_labels("web", 8080, **{labels.LABEL_FUNNEL_ENABLE: "true"})
    lbls.update(extra)
    return lbls


def test_funnel_defaults():
    svc = interpret(funnel_labels(**{labels.LABEL_FUNNEL_TARGET_PORT: "8080"}))
    f = svc.funnel
    assert (f.public_port, f.protocol, f.target_protocol) == (443, "https", "http")
    assert (f.dest_ip, f.dest_port) == ("172.17.0.5", 8080)


def test_funnel_requires_target_port():
    with pytest.raises(MissingRequiredField, match="funnel"):
        interpret(funnel_labels())


def test_funnel_port_outside_allow_list():
    with pytest.raises(InvalidFunnelPort):
        interpret(
            funnel_labels(
                **{labels.LABEL_FUNNEL_TARGET_PORT: "8080", labels.LABEL_FUNNEL_PORT: "8080"}
            )
        )


def test_tcp_funnel_may_use_any_port():
    svc = interpret(
        funnel_labels(
            **{
                labels.LABEL_FUNNEL_TARGET_PORT: "8080",
                labels.LABEL_FUNNEL_PROTOCOL: "tcp",
                labels.LABEL_FUNNEL_PORT: "2222",
            }
        )
    )
    assert svc.funnel.public_port == 2222
    assert svc.funnel.target_protocol == "tcp"


def test_tcp_funnel_on_8443():
    svc = interpret(
        funnel_labels(
            **{
                labels.LABEL_FUNNEL_TARGET_PORT: "8080",
                labels.LABEL_FUNNEL_PROTOCOL: "tcp",
                labels.LABEL_FUNNEL_PORT: "8443",
            }
        )
    )
    assert (svc.funnel.public_port, svc.funnel.protocol) == (8443, "tcp")


def test_plain_http_funnel_rejected():
    with pytest.raises(InvalidProtocol):
        interpret(
            funnel_labels(
                **{labels.LABEL_FUNNEL_TARGET_PORT: "8080", labels.LABEL_FUNNEL_PROTOCOL: "http"}
            )
        )


def test_funnel_on_other_port_is_resolved_separately():
    lbls = funnel_labels(
        **{labels.LABEL_FUNNEL_TARGET_PORT: "9000", labels.LABEL_DIRECT: "false"}
    )
    svc = interpret(
        lbls,
        port_bindings={"8080/tcp": ["18080"], "9000/tcp": ["19000"]},
    )
    assert (svc.dest_ip, svc.dest_port) == ("127.0.0.1", 18080)
    assert (svc.funnel.dest_ip, svc.funnel.dest_port) == ("127.0.0.1", 19000)


def test_destination_format():
    assert build_destination("http", "172.17.0.5", 8080) == "http://172.17.0.5:8080"
    assert build_destination("tcp", "127.0.0.1", "5432") == "tcp://127.0.0.1:5432"
