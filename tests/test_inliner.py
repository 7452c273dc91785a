import asyncio
import base64
import logging
from pathlib import Path
from typing import List

from aiohttp import web
from aiohttp.test_utils import TestServer

from webinline.core.keys import K_FILE_NOT_FOUND
from webinline.workflows import inliner
from webinline.workflows.inliner import InlineError, InlineOptions, apply_replacements, inline_css, inline_html
from webinline.workflows.web_fetch import FetchConfig, ResourceFetcher

PNG = b"\x89PNG\r\n\x1a\n" + b"\x01" * 64
PNG_URI = "data:image/png;base64," + base64.b64encode(PNG).decode("ascii")
SVG = '<?xml version="1.0"?>\n<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 1 1"><rect width="1" height="1"/></svg>'


def _site(tmp_path: Path) -> Path:
    (tmp_path / "css").mkdir()
    (tmp_path / "img").mkdir()
    (tmp_path / "style.css").write_text("body { color: red; }", encoding="utf-8")
    (tmp_path / "app.js").write_text("console.log('hi');", encoding="utf-8")
    (tmp_path / "img" / "a.png").write_bytes(PNG)
    (tmp_path / "img" / "logo.svg").write_text(SVG, encoding="utf-8")
    return tmp_path


def _run(options: InlineOptions):
    return asyncio.run(inline_html(options))


def test_document_without_references_is_unchanged(tmp_path: Path) -> None:
    doc = "<html>\r\n<body><p>$& \\g<0> url(x.png)</p><script>var a;</script></body></html>"

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=True))

    assert result.text == doc
    assert result.error is None
    assert result.outcomes == []


def test_inlines_local_stylesheet(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<head>\n  <link rel="stylesheet" href="style.css" media="print">\n</head>\n'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path)))

    assert result.error is None
    assert result.text == '<head>\n  <style media="print">\nbody { color: red; }\n</style>\n</head>\n'
    assert "<link" not in result.text


def test_inlines_script_and_drops_src(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<script type="module" src="app.js" defer></script>'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path)))

    assert result.text == "<script type=\"module\" defer>\nconsole.log('hi');\n</script>"


def test_inlines_self_closing_script(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<body><script src="app.js" async/></body>'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path)))

    assert result.text == "<body><script async>\nconsole.log('hi');\n</script></body>"


def test_script_closing_tag_is_escaped(tmp_path: Path) -> None:
    (tmp_path / "evil.js").write_text("document.write('</script>');", encoding="utf-8")
    doc = '<script src="evil.js"></script><p>after</p>'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path)))

    assert result.text == "<script>\ndocument.write('<\\/script>');\n</script><p>after</p>"


def test_replacement_tokens_are_kept_verbatim(tmp_path: Path) -> None:
    body = 'var s = "a".replace(/a/, "$&$&"); var t = "\\g<0>\\1";'
    (tmp_path / "regex.js").write_text(body, encoding="utf-8")
    doc = '<p>before</p><script src="regex.js"></script><p>after</p>'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path)))

    assert "$&$&" in result.text
    assert "\\g<0>\\1" in result.text
    assert result.text.startswith("<p>before</p><script>\n")
    assert result.text.endswith("\n</script><p>after</p>")


def test_images_inline_only_src_value(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<img class="hero" src="img/a.png" alt="A"/>'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=True))

    assert result.text == f'<img class="hero" src="{PNG_URI}" alt="A"/>'


def test_images_disabled_by_default(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<img src="img/a.png">'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path)))

    assert result.text == doc
    assert result.outcomes == []


def test_opt_in_marker_forces_image(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<img src="img/a.png" data-inline><img src="img/a.png">'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=False))

    assert result.text == f'<img src="{PNG_URI}" data-inline><img src="img/a.png">'


def test_opt_out_marker_prevents_image(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<img src="img/a.png" data-inline-ignore><img src="img/a.png">'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=True))

    assert result.text == f'<img src="img/a.png" data-inline-ignore><img src="{PNG_URI}">'


def test_opt_out_marker_prevents_stylesheet(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<link rel="stylesheet" href="style.css" data-inline-ignore>'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path)))

    assert result.text == doc


def test_numeric_threshold_includes_small_images(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<img src="img/a.png"><img src="img/a.png" data-inline-ignore>'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=8))

    assert result.text == f'<img src="{PNG_URI}"><img src="img/a.png" data-inline-ignore>'


def test_numeric_threshold_excludes_large_images(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<img src="img/a.png">'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=0.1))

    assert len(PNG_URI) > 100
    assert result.text == doc
    assert result.error is None


def test_size_hint_skips_fetch(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<img src="img/a.png" data-inline-size="20">'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=8))

    assert result.text == doc
    assert result.outcomes == []


def test_size_hint_within_threshold_is_trusted(tmp_path: Path) -> None:
    _site(tmp_path)
    (tmp_path / "img" / "big.png").write_bytes(PNG * 64)
    doc = '<img src="img/big.png" data-inline-size="1">'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=2))

    expected = "data:image/png;base64," + base64.b64encode(PNG * 64).decode("ascii")
    assert len(expected) > 2 * 1000
    assert result.text == f'<img src="{expected}" data-inline-size="1">'


def test_strict_missing_file_reports_error(tmp_path: Path) -> None:
    doc = '<link rel="stylesheet" href="missing.css">\n<p>body</p>\n'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), strict=True))

    assert result.text == doc
    assert isinstance(result.error, InlineError)
    assert result.error.failures[0].error_kind == K_FILE_NOT_FOUND
    assert "missing.css" in str(result.error)


def test_strict_keeps_successful_substitutions(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<link rel="stylesheet" href="style.css"><script src="missing.js"></script>'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), strict=True))

    assert result.error is not None
    assert result.text == '<style>\nbody { color: red; }\n</style><script src="missing.js"></script>'


def test_lenient_missing_file_warns(tmp_path: Path) -> None:
    doc = '<script src="missing.js"></script>'
    messages: List[str] = []

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), warn=messages.append))

    assert result.error is None
    assert result.text == doc
    assert len(messages) == 1
    assert messages[0].startswith("Not inlining missing.js")


def test_lenient_default_sink_logs_warning(tmp_path: Path, caplog) -> None:
    doc = '<img src="nope.png">'

    with caplog.at_level(logging.WARNING, logger="webinline"):
        result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=True))

    assert result.error is None
    assert any("nope.png" in record.getMessage() for record in caplog.records)


def test_inlining_is_idempotent(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<link rel="stylesheet" href="style.css"><script src="app.js"></script><img src="img/a.png">'
    options = InlineOptions(file_content=doc, relative_to=str(tmp_path), images=True)

    first = _run(options)
    second = _run(InlineOptions(file_content=first.text, relative_to=str(tmp_path), images=True))

    assert second.text == first.text
    assert second.outcomes == []


def test_stylesheet_urls_resolve_against_stylesheet(tmp_path: Path) -> None:
    _site(tmp_path)
    (tmp_path / "css" / "site.css").write_text(
        "a { background: url(../img/a.png); }\nb { background: url('icons/i.png'); }",
        encoding="utf-8",
    )
    doc = '<link rel="stylesheet" href="css/site.css">'

    inlined = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=True, strict=True))
    rebased = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=False))

    assert f"url({PNG_URI})" in inlined.text
    assert isinstance(inlined.error, InlineError)
    assert "icons/i.png" in str(inlined.error)
    assert rebased.text == (
        "<style>\na { background: url(img/a.png); }\n"
        "b { background: url('css/icons/i.png'); }\n</style>"
    )


def test_link_and_script_transforms(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<link rel="stylesheet" href="style.css"><script src="app.js"></script>'
    seen: List[str] = []

    def upper(content: str, location: str) -> str:
        seen.append(Path(location).name)
        return content.upper()

    result = _run(
        InlineOptions(
            file_content=doc,
            relative_to=str(tmp_path),
            link_transform=upper,
            script_transform=upper,
        )
    )

    assert "BODY { COLOR: RED; }" in result.text
    assert "CONSOLE.LOG('HI');" in result.text
    assert sorted(seen) == ["app.js", "style.css"]


def test_svg_images_inline_as_markup(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<p><img class="logo" src="img/logo.svg" alt="Logo"></p>'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), svgs=True))

    assert "<img" not in result.text
    assert result.text.startswith("<p><svg")
    assert result.text.endswith("</svg></p>")
    assert 'class="logo"' in result.text
    assert 'viewBox="0 0 1 1"' in result.text
    assert "<?xml" not in result.text


def test_custom_inline_attribute(tmp_path: Path) -> None:
    _site(tmp_path)
    doc = '<img src="img/a.png" embed>'

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), inline_attribute="embed"))

    assert result.text == f'<img src="{PNG_URI}" embed>'


def test_inline_css_document(tmp_path: Path) -> None:
    _site(tmp_path)
    css = "a { background: url(img/a.png); }\nb { background: url(img/a.png); } /* data-inline-ignore */\n"

    result = asyncio.run(inline_css(InlineOptions(file_content=css, relative_to=str(tmp_path), images=True)))

    assert result.text == (
        f"a {{ background: url({PNG_URI}); }}\n"
        "b { background: url(img/a.png); } /* data-inline-ignore */\n"
    )


def test_inline_css_marker_opt_in_with_images_off(tmp_path: Path) -> None:
    _site(tmp_path)
    css = "a { background: url(\"img/a.png\"); } /* data-inline */\nb { background: url(img/a.png); }\n"

    result = asyncio.run(inline_css(InlineOptions(file_content=css, relative_to=str(tmp_path))))

    assert result.text == (
        f'a {{ background: url("{PNG_URI}"); }} /* data-inline */\n'
        "b { background: url(img/a.png); }\n"
    )


def test_inline_css_rebase_relative_to(tmp_path: Path) -> None:
    css = "a { background: url(../fonts/a.woff); } b { background: url(https://x.org/b.png); }"

    result = asyncio.run(
        inline_css(InlineOptions(file_content=css, relative_to=str(tmp_path), rebase_relative_to="theme/css"))
    )

    assert result.text == "a { background: url(theme/fonts/a.woff); } b { background: url(https://x.org/b.png); }"


def test_remote_document_with_protocol_relative_and_nested_urls() -> None:
    async def style(request: web.Request) -> web.Response:
        return web.Response(text="p { background: url(../img/p.png); }", content_type="text/css")

    async def pixel(request: web.Request) -> web.Response:
        return web.Response(body=PNG, content_type="image/png")

    app = web.Application()
    app.router.add_get("/css/style.css", style)
    app.router.add_get("/img/p.png", pixel)

    async def run():
        async with TestServer(app) as server:
            base = str(server.make_url("/"))
            host = f"{server.host}:{server.port}"
            doc = (
                '<link rel="stylesheet" href="css/style.css">'
                f'<img src="//{host}/img/p.png">'
                '<script src="missing.js"></script>'
            )
            options = InlineOptions(
                file_content=doc,
                relative_to=base,
                images=True,
                strict=True,
                fetch_config=FetchConfig(max_attempts=1),
            )
            return await inline_html(options)

    result = asyncio.run(run())

    assert result.text == (
        f"<style>\np {{ background: url({PNG_URI}); }}\n</style>"
        f'<img src="{PNG_URI}">'
        '<script src="missing.js"></script>'
    )
    assert isinstance(result.error, InlineError)
    assert result.error.failures[0].status == 404


def test_lenient_remote_http_error_warns() -> None:
    app = web.Application()
    warnings: List[str] = []

    async def run():
        async with TestServer(app) as server:
            doc = '<link rel="stylesheet" href="css/gone.css">\n<p>body</p>\n'
            options = InlineOptions(
                file_content=doc,
                relative_to=str(server.make_url("/")),
                fetch_config=FetchConfig(max_attempts=1),
                warn=warnings.append,
            )
            return doc, await inline_html(options)

    doc, result = asyncio.run(run())

    assert result.error is None
    assert result.text == doc
    assert len(warnings) == 1
    assert "css/gone.css" in warnings[0]
    assert "HTTP 404" in warnings[0]


def test_remote_stylesheet_decoded_with_declared_charset() -> None:
    css = "p::after { content: 'привет'; }"

    async def legacy(request: web.Request) -> web.Response:
        return web.Response(body=css.encode("windows-1251"), content_type="text/css", charset="windows-1251")

    app = web.Application()
    app.router.add_get("/legacy.css", legacy)

    async def run():
        async with TestServer(app) as server:
            options = InlineOptions(
                file_content='<link rel="stylesheet" href="legacy.css">',
                relative_to=str(server.make_url("/")),
                fetch_config=FetchConfig(max_attempts=1),
            )
            return await inline_html(options)

    result = asyncio.run(run())

    assert result.error is None
    assert result.text == f"<style>\n{css}\n</style>"


def test_stylesheet_url_passes_run_concurrently(tmp_path: Path, monkeypatch) -> None:
    _site(tmp_path)
    for name in ("a", "b", "c"):
        (tmp_path / f"{name}.css").write_text("p { background: url(img/a.png); }", encoding="utf-8")
    state = {"active": 0, "peak": 0}
    original = ResourceFetcher.fetch_all

    async def tracking_fetch_all(self, matches, relative_to):
        state["active"] += 1
        state["peak"] = max(state["peak"], state["active"])
        try:
            await asyncio.sleep(0.05)
            return await original(self, matches, relative_to)
        finally:
            state["active"] -= 1

    monkeypatch.setattr(ResourceFetcher, "fetch_all", tracking_fetch_all)
    doc = "".join(f'<link rel="stylesheet" href="{name}.css">' for name in ("a", "b", "c"))

    result = _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=True))

    assert result.error is None
    assert result.text.count(PNG_URI) == 3
    assert state["peak"] == 3


def test_fetch_all_runs_before_substitution(tmp_path: Path, monkeypatch) -> None:
    _site(tmp_path)
    calls = {"fetch_all": 0}
    original = ResourceFetcher.fetch_all

    async def counting_fetch_all(self, matches, relative_to):
        calls["fetch_all"] += 1
        return await original(self, matches, relative_to)

    monkeypatch.setattr(ResourceFetcher, "fetch_all", counting_fetch_all)
    doc = '<link rel="stylesheet" href="style.css"><script src="app.js"></script><img src="img/a.png">'

    _run(InlineOptions(file_content=doc, relative_to=str(tmp_path), images=True))

    # one barrier for the document, one for the stylesheet's own url() pass
    assert calls["fetch_all"] == 2


def test_callback_api_with_camel_case_options(tmp_path: Path) -> None:
    _site(tmp_path)
    received = []

    error, text = inliner.html(
        {"fileContent": '<script src="app.js"></script>', "relativeTo": str(tmp_path), "uglify": True},
        lambda err, result: received.append((err, result)),
    )

    assert error is None
    assert text == "<script>\nconsole.log('hi');\n</script>"
    assert received == [(None, text)]


def test_callback_api_strict_failure(tmp_path: Path) -> None:
    doc = '<img src="missing.png">'
    received = []

    inliner.html(
        {"fileContent": doc, "relativeTo": str(tmp_path), "images": True, "strict": True},
        lambda err, result: received.append((err, result)),
    )

    (err, result), = received
    assert isinstance(err, InlineError)
    assert result == doc


def test_callback_api_never_raises_on_bad_options() -> None:
    received = []

    inliner.css({"relativeTo": "x"}, lambda err, result: received.append((err, result)))
    error, text = inliner.html({"fileContent": "<p></p>", "images": "yes"})

    assert isinstance(received[0][0], ValueError)
    assert received[0][1] == ""
    assert isinstance(error, ValueError)
    assert text == "<p></p>"


def test_apply_replacements_is_literal() -> None:
    text = "0123456789"
    assert apply_replacements(text, [(6, 8, "\\g<0>"), (1, 3, "$&")]) == "0$&345\\g<0>89"
