"""
Source resolution loop tests with scripted upstream, clock and module host.
"""

import json

import pytest

from app.config.settings import ResolverSettings
from app.exceptions import ExtractionFailed, TransformError, UpstreamError
from app.providers.flixer import (
    SERVERS,
    FlixerProvider,
    build_path,
    candidates_for,
    extract_stream_url,
)

STREAM = "https://cdn.example/hls/master.m3u8"


class FakeClock:
    def __init__(self):
        self.syncs = 0
        self.offset_ms = 0

    def sync(self):
        self.syncs += 1
        return self.offset_ms


class FakeHost:
    """Identity transform; optional scripted failures."""

    def __init__(self, transform_failures=0, plaintext_override=None):
        self.derive_calls = 0
        self.transform_failures = transform_failures
        self.plaintext_override = plaintext_override

    def derive_key(self):
        self.derive_calls += 1
        return f"key-{self.derive_calls}"

    def reset_key(self):
        pass

    def transform(self, ciphertext, key):
        if self.transform_failures:
            self.transform_failures -= 1
            raise TransformError("bad payload")
        if self.plaintext_override is not None:
            return self.plaintext_override
        return ciphertext


class ScriptedClient:
    """Replies per X-Server from a script; the last entry repeats."""

    def __init__(self, script=None, default="{}"):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default = default
        self.calls = []
        self.api_key = None

    def __call__(self, **kwargs):
        self.api_key = kwargs["api_key"]
        self.factory_kwargs = kwargs
        return self

    def request(self, path, extra_headers=None):
        server = (extra_headers or {}).get("X-Server")
        self.calls.append((path, server, self.api_key))
        if server is None:
            return "warmup"
        replies = self.script.get(server)
        reply = (replies.pop(0) if len(replies) > 1 else replies[0]) if replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply

    def server_calls(self, server=None):
        return [c for c in self.calls if c[1] is not None and (server is None or c[1] == server)]


def _provider(client, host=None, clock=None, sleeps=None, **settings):
    host = host or FakeHost()
    clock = clock or FakeClock()
    return FlixerProvider(
        settings=ResolverSettings(**settings),
        host_factory=lambda profile: host,
        clock_factory=lambda: clock,
        client_factory=client,
        sleep=(sleeps.append if sleeps is not None else (lambda _s: None)),
    )


class TestExtractStreamUrl:
    def test_flat_keys_come_first(self):
        data = {"file": "https://flat", "sources": [{"url": "https://nested"}]}
        assert extract_stream_url(data, "alpha") == "https://flat"

    def test_sources_object(self):
        assert extract_stream_url({"sources": {"file": "https://obj"}}, "alpha") == "https://obj"

    def test_sources_list_prefers_matching_server(self):
        data = {"sources": [{"server": "bravo", "url": "https://b"}, {"server": "alpha", "url": "https://a"}]}
        assert extract_stream_url(data, "alpha") == "https://a"
        assert extract_stream_url(data, "delta") == "https://b"

    def test_nested_sources_inside_entry(self):
        data = {"sources": [{"server": "alpha", "sources": [{"file": "https://deep"}]}]}
        assert extract_stream_url(data, "alpha") == "https://deep"

    def test_servers_map_object_and_list(self):
        assert extract_stream_url({"servers": {"alpha": {"stream": "https://s"}}}, "alpha") == "https://s"
        assert extract_stream_url({"servers": {"alpha": [{"file": "https://l"}]}}, "alpha") == "https://l"
        assert extract_stream_url({"servers": {"bravo": {"url": "https://x"}}}, "alpha") is None

    def test_blank_values_are_empty(self):
        assert extract_stream_url({"url": "   ", "sources": []}, "alpha") is None
        assert extract_stream_url(["https://not-a-dict"], "alpha") is None


class TestCandidates:
    def test_default_order(self):
        ids = [c.server_id for c in candidates_for("movie", ResolverSettings())]
        assert ids == [s for s, _ in SERVERS]

    def test_single_server_restriction(self):
        candidates = candidates_for("tv", ResolverSettings(), server="Charlie")
        assert [(c.server_id, c.display_name) for c in candidates] == [("charlie", "Circe")]

    def test_configured_subset(self):
        ids = [c.server_id for c in candidates_for("movie", ResolverSettings(servers=("delta", "nope", "alpha")))]
        assert ids == ["delta", "alpha"]

    def test_misconfigured_servers_keep_every_candidate(self):
        ids = [c.server_id for c in candidates_for("movie", ResolverSettings(servers=("nope",)))]
        assert ids == [s for s, _ in SERVERS]

    def test_unknown_server_rejected(self):
        with pytest.raises(ValueError):
            candidates_for("movie", ResolverSettings(), server="zulu")

    def test_paths(self):
        assert build_path("550", "movie") == "/api/tmdb/movie/550/images"
        assert build_path("1399", "tv", 1, 2) == "/api/tmdb/tv/1399/season/1/episode/2/images"


class TestResolutionLoop:
    def test_empty_replies_then_success_on_same_server(self):
        client = ScriptedClient({"alpha": ['{"sources": []}', '{"url": ""}', json.dumps({"url": STREAM})]})
        sleeps = []
        stream = _provider(client, sleeps=sleeps).resolve_stream("550", "movie")

        assert stream.url == STREAM
        assert stream.server_id == "alpha"
        assert len(client.server_calls("alpha")) == 3
        assert client.server_calls("bravo") == []
        assert sleeps == [0.1, 0.2, 0.2]

    def test_all_empty_exhausts_every_server(self):
        client = ScriptedClient(default='{"sources": []}')
        with pytest.raises(ExtractionFailed) as excinfo:
            _provider(client).resolve_stream("550", "movie")

        assert len(client.server_calls()) == len(SERVERS) * 5
        assert len(client.calls) == len(SERVERS) * 5 + 1
        assert excinfo.value.servers == [s for s, _ in SERVERS]

    def test_session_order_and_warmup(self):
        client = ScriptedClient({"alpha": [json.dumps({"file": STREAM})]})
        clock = FakeClock()
        host = FakeHost()
        _provider(client, host=host, clock=clock).resolve_stream("1399", "tv", 1, 2)

        assert clock.syncs == 1
        assert host.derive_calls == 1
        path, server, key = client.calls[0]
        assert server is None
        assert path == "/api/tmdb/tv/1399/season/1/episode/2/images"
        assert key == "key-1"
        assert client.factory_kwargs["fingerprint"]

    def test_auth_failure_resyncs_clock_once(self):
        client = ScriptedClient({"alpha": [UpstreamError("HTTP 401", status=401), json.dumps({"url": STREAM})]})
        clock = FakeClock()
        stream = _provider(client, clock=clock).resolve_stream("550", "movie")
        assert stream.url == STREAM
        assert clock.syncs == 2

    def test_repeated_auth_failure_moves_on(self):
        client = ScriptedClient({
            "alpha": [UpstreamError("HTTP 403", status=403)],
            "bravo": [json.dumps({"url": STREAM})],
        })
        clock = FakeClock()
        stream = _provider(client, clock=clock).resolve_stream("550", "movie")
        assert stream.server_id == "bravo"
        assert clock.syncs == 2

    def test_transform_failure_rederives_key_once(self):
        client = ScriptedClient({"alpha": [json.dumps({"url": STREAM})]})
        host = FakeHost(transform_failures=1)
        stream = _provider(client, host=host).resolve_stream("550", "movie")
        assert stream.url == STREAM
        assert host.derive_calls == 2
        assert client.api_key == "key-2"

    def test_unparsable_plaintext_after_rederive_skips_server(self):
        client = ScriptedClient(default="{}")
        host = FakeHost(plaintext_override="garbage")
        with pytest.raises(ExtractionFailed):
            _provider(client, host=host).resolve_stream("550", "movie")
        assert host.derive_calls == 2

    def test_only_upstream_failures_surface_last_error(self):
        client = ScriptedClient(default=UpstreamError("HTTP 503", status=503))
        with pytest.raises(UpstreamError) as excinfo:
            _provider(client).resolve_stream("550", "movie")
        assert excinfo.value.status == 503
        assert len(client.server_calls()) == len(SERVERS)

    def test_mixed_failures_are_extraction_failed(self):
        client = ScriptedClient({"alpha": [UpstreamError("HTTP 500", status=500)]}, default="{}")
        with pytest.raises(ExtractionFailed):
            _provider(client, empty_retries=2).resolve_stream("550", "movie")
        assert len(client.server_calls()) == 1 + (len(SERVERS) - 1) * 2

    def test_single_server_request(self):
        client = ScriptedClient(default="{}")
        with pytest.raises(ExtractionFailed) as excinfo:
            _provider(client).resolve_stream("550", "movie", server="echo")
        assert {c[1] for c in client.server_calls()} == {"echo"}
        assert excinfo.value.servers == ["echo"]

    def test_warmup_failure_is_ignored(self):
        client = ScriptedClient({"alpha": [json.dumps({"url": STREAM})]})
        original = client.request

        def flaky(path, extra_headers=None):
            if extra_headers is None:
                client.calls.append((path, None, client.api_key))
                raise UpstreamError("warmup refused", status=500)
            return original(path, extra_headers)

        client.request = flaky
        assert _provider(client).resolve_stream("550", "movie").url == STREAM

    def test_to_source_shape(self):
        client = ScriptedClient({"alpha": [json.dumps({"url": STREAM})]})
        stream = _provider(client).resolve_stream("550", "movie")
        source = stream.to_source("https://flixer.sh/")
        assert source["title"] == "Flixer Ares"
        assert source["type"] == "hls"
        assert source["requiresSegmentProxy"] is True


class TestValidation:
    @pytest.mark.parametrize("args", [
        ("", "movie", None, None),
        ("abc", "movie", None, None),
        ("550", "anime", None, None),
        ("1399", "tv", 1, None),
        ("1399", "tv", None, 2),
    ])
    def test_bad_input_is_value_error(self, args):
        client = ScriptedClient()
        with pytest.raises(ValueError):
            _provider(client).resolve_stream(*args)
        assert client.calls == []
