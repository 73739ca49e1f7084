"""
Tests for backend/services/geoip_service.py.
"""

from unittest.mock import Mock

import pytest
import requests

from backend.services.geoip_service import GeoIPError, GeoIPService, determine_region

ENABLED_CONFIG = {"enabled": True, "url": "https://geo.example.com/{ip}/country/", "timeout": 3}


def response(status_code=200, text="", json_data=None):
    resp = Mock()
    resp.status_code = status_code
    resp.text = text
    resp.headers = {"Content-Type": "application/json" if json_data is not None else "text/plain"}
    resp.json.return_value = json_data
    return resp


@pytest.mark.parametrize(
    "code,region",
    [
        ("AU", "australia"),
        ("aus", "australia"),
        ("SG", "asia"),
        ("IDN", "asia"),
        ("JP", "asia"),
        ("US", "global"),
        ("DE", "global"),
        ("", "global"),
        (None, "global"),
    ],
)
def test_determine_region(code, region):
    assert determine_region(code) == region


def test_disabled_lookup_uses_default():
    service = GeoIPService({"enabled": False}, default_region="global")
    service.session = Mock()
    assert service.resolve_region("203.0.113.10") == "global"
    service.session.get.assert_not_called()


def test_text_response():
    service = GeoIPService(ENABLED_CONFIG, default_region="global")
    service.session = Mock()
    service.session.get.return_value = response(text="sg\n")

    assert service.resolve_region("203.0.113.10") == "asia"
    service.session.get.assert_called_once_with(
        "https://geo.example.com/203.0.113.10/country/", timeout=3
    )


def test_json_response():
    service = GeoIPService(ENABLED_CONFIG, default_region="global")
    service.session = Mock()
    service.session.get.return_value = response(json_data={"country_code": "AU"})
    assert service.lookup_country("203.0.113.10") == "AU"


def test_http_error_falls_back():
    service = GeoIPService(ENABLED_CONFIG, default_region="global")
    service.session = Mock()
    service.session.get.return_value = response(status_code=429)
    assert service.resolve_region("203.0.113.10") == "global"


def test_network_error_falls_back():
    service = GeoIPService(ENABLED_CONFIG, default_region="asia")
    service.session = Mock()
    service.session.get.side_effect = requests.exceptions.ConnectionError("down")
    assert service.resolve_region("203.0.113.10") == "asia"


def test_garbage_response_raises():
    service = GeoIPService(ENABLED_CONFIG, default_region="global")
    service.session = Mock()
    service.session.get.return_value = response(text="<html>rate limited</html>")
    with pytest.raises(GeoIPError):
        service.lookup_country("203.0.113.10")


def test_missing_url_raises():
    service = GeoIPService({"enabled": True, "url": ""}, default_region="global")
    with pytest.raises(GeoIPError):
        service.lookup_country("203.0.113.10")
