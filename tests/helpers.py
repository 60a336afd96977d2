import json

import requests


def json_response(status, payload=None, text=None):
    resp = requests.Response()
    resp.status_code = status
    resp.encoding = "utf-8"
    if text is not None:
        resp._content = text.encode("utf-8")
    else:
        resp._content = json.dumps(payload).encode("utf-8")
        resp.headers["Content-Type"] = "application/json"
    return resp


class FakeSession:
    """Stands in for requests.Session; ``handler(url, params, headers)`` answers."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append(
            {
                "url": url,
                "params": dict(params or {}),
                "headers": dict(headers or {}),
                "timeout": timeout,
            }
        )
        return self.handler(url, dict(params or {}), dict(headers or {}))


def slot(eta, load="SEA", bus_type="DD"):
    return {
        "OriginCode": "77009",
        "DestinationCode": "77009",
        "EstimatedArrival": eta,
        "Monitored": 1,
        "Latitude": "1.3154918333333334",
        "Longitude": "103.9059125",
        "VisitNumber": "1",
        "Load": load,
        "Feature": "WAB",
        "Type": bus_type,
    }


EMPTY_SLOT = {
    "OriginCode": "",
    "DestinationCode": "",
    "EstimatedArrival": "",
    "Monitored": 0,
    "Latitude": "",
    "Longitude": "",
    "VisitNumber": "",
    "Load": "",
    "Feature": "",
    "Type": "",
}


def arrivals_payload(stop_code="83139", services=("15",)):
    return {
        "odata.metadata": "https://datamall2.mytransport.sg/ltaodataservice/v3/BusArrival",
        "BusStopCode": stop_code,
        "Services": [
            {
                "ServiceNo": service_no,
                "Operator": "GAS",
                "NextBus": slot("2099-01-01T08:05:00+08:00"),
                "NextBus2": slot("2099-01-01T08:17:00+08:00", load="SDA", bus_type="SD"),
                "NextBus3": EMPTY_SLOT,
            }
            for service_no in services
        ],
    }


def stop(code, lat=1.3, lon=103.8, description="Opp Blk 1", road="Jln Bahagia"):
    return {
        "BusStopCode": code,
        "RoadName": road,
        "Description": description,
        "Latitude": lat,
        "Longitude": lon,
    }
