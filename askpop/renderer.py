"""Build the HTML pages that render Markdown and Mermaid inside Qt WebEngine."""

from __future__ import annotations

import hashlib
import html
import json
import os
from enum import Enum
from pathlib import Path

from markdown_it import MarkdownIt
from mdit_py_plugins.dollarmath import dollarmath_plugin

from askpop.tracking import RENDER_STATUS_EMPTY
from askpop.viewport import SCENE_ELEMENT_ID

BRIDGE_OBJECT_NAME = "askpopBridge"
CONTENT_ELEMENT_ID = "askpop-content"
DIAGRAM_ELEMENT_ID = "askpop-diagram"
STAGE_ELEMENT_ID = "askpop-stage"
DIAGRAM_SELECTOR = f"#{DIAGRAM_ELEMENT_ID} svg"
LIBRARY_WAIT_MS = 8000

MERMAID_EXAMPLE = """graph TD
    A[Start] --> B{Any data?}
    B -->|Yes| C[Process data]
    B -->|No| D[Fetch data]
    C --> E[Show result]
    D --> C
    E --> F[End]
"""

MARKDOWN_EXAMPLE = """# AskPop Markdown

Paste or type **Markdown** on the left and press *Render*.

- Lists, tables and `inline code`
- Inline math such as $e^{i\\pi} + 1 = 0$

| Feature | Supported |
|---------|-----------|
| Tables  | yes       |
| Mermaid | yes       |

```mermaid
graph LR
    Selection --> AskPop --> Answer
```
"""


class RenderMode(Enum):
    MARKDOWN = "markdown"
    MERMAID = "mermaid"


def script_string_literal(text: str) -> str:
    """Encode `text` as a JavaScript string literal safe inside an inline <script>.

    The result is valid JSON, so `json.loads` returns `text` unchanged. Angle
    brackets and ampersands are escaped so the literal can never close the
    surrounding script element, and U+2028/U+2029 so older engines do not
    treat them as line terminators.
    """
    literal = json.dumps(text, ensure_ascii=False)
    return (
        literal.replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def _first_existing(candidates: list[Path]) -> Path | None:
    for candidate in candidates:
        try:
            if candidate.is_file():
                return candidate.resolve()
        except OSError:
            continue
    return None


def _resolve_local_script(env_name: str, relative_paths: list[str], system_paths: list[str]) -> Path | None:
    """Locate a vendored JS bundle from env, the package directory or system paths."""
    candidates: list[Path] = []
    env_value = os.environ.get(env_name, "").strip()
    if env_value:
        candidates.append(Path(env_value).expanduser())
    app_dir = Path(__file__).resolve().parent
    for relative in relative_paths:
        candidates.append(app_dir / relative)
        candidates.append(app_dir.parent / relative)
    candidates.extend(Path(path) for path in system_paths)
    return _first_existing(candidates)


def _script_sources(local_script: Path | None, cdn_urls: list[str]) -> list[str]:
    sources: list[str] = []
    if local_script is not None:
        sources.append(local_script.as_uri())
    sources.extend(cdn_urls)
    # Keep order while dropping duplicates.
    return list(dict.fromkeys(sources))


def placeholder_html(message: str, token: int = 0) -> str:
    """Render an empty-state page that still reports completion to the host."""
    escaped = html.escape(message)
    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8"/>
  <style>
    html, body {{
      margin: 0;
      height: 100%;
      background: #ffffff;
      color: #6b7280;
      font-family: -apple-system, "Segoe UI", "Noto Sans", sans-serif;
    }}
    main {{
      height: 100%;
      display: grid;
      place-items: center;
      font-size: 1rem;
    }}
  </style>
  <script src="qrc:///qtwebchannel/qwebchannel.js"></script>
</head>
<body><main>{escaped}</main>
<script>
{_bridge_script(token)}
  window.__askpopNotify({json.dumps(RENDER_STATUS_EMPTY)}, "");
</script>
</body>
</html>
"""


def _bridge_script(token: int) -> str:
    """Page-side end of the QWebChannel link back to the host window."""
    bridge_name = json.dumps(BRIDGE_OBJECT_NAME)
    return f"""
  window.__askpopToken = {int(token)};
  window.__askpopBridgePromise = new Promise((resolve) => {{
    if (typeof QWebChannel === "undefined" || !window.qt || !qt.webChannelTransport) {{
      resolve(null);
      return;
    }}
    new QWebChannel(qt.webChannelTransport, (channel) => {{
      resolve(channel.objects[{bridge_name}] || null);
    }});
  }});
  window.__askpopNotified = false;
  window.__askpopNotify = (status, detail) => {{
    if (window.__askpopNotified) {{
      return;
    }}
    window.__askpopNotified = true;
    window.__askpopRenderStatus = status;
    window.__askpopBridgePromise.then((bridge) => {{
      if (bridge && typeof bridge.renderFinished === "function") {{
        bridge.renderFinished(window.__askpopToken, String(status), String(detail || ""));
      }}
    }});
  }};
  window.__askpopLoadScripts = async (sources) => {{
    for (const src of sources) {{
      try {{
        await new Promise((resolve, reject) => {{
          const script = document.createElement("script");
          script.src = src;
          script.onload = () => resolve(true);
          script.onerror = () => reject(new Error(`Failed to load ${{src}}`));
          document.head.appendChild(script);
        }});
        return src;
      }} catch (error) {{
        console.error("askpop script load failed:", src, error);
      }}
    }}
    return "";
  }};
  window.__askpopWithTimeout = (promise, ms) => Promise.race([
    promise,
    new Promise((resolve) => window.setTimeout(() => resolve("__timeout__"), ms)),
  ]);
  window.__askpopShowError = (host, title, message) => {{
    const box = document.createElement("div");
    box.className = "askpop-error";
    const heading = document.createElement("h3");
    heading.textContent = title;
    const body = document.createElement("pre");
    body.textContent = message;
    box.appendChild(heading);
    box.appendChild(body);
    host.innerHTML = "";
    host.appendChild(box);
  }};
"""


_BASE_STYLE = """
    :root {
      --fg: #1f2937;
      --bg: #ffffff;
      --code-bg: #f3f4f6;
      --border: #d1d5db;
      --link: #0b57d0;
    }
    html, body {
      margin: 0;
      padding: 0;
      background: var(--bg);
      color: var(--fg);
      font-family: -apple-system, "Segoe UI", "Noto Sans", sans-serif;
      line-height: 1.6;
      font-size: 16px;
    }
    .askpop-error {
      color: #b91c1c;
      background: #fef2f2;
      border: 1px solid #fca5a5;
      border-radius: 6px;
      padding: 0.8rem 1rem;
      margin: 1rem;
    }
    .askpop-error h3 {
      margin: 0 0 0.4rem 0;
      font-size: 1rem;
    }
    .askpop-error pre {
      margin: 0;
      white-space: pre-wrap;
      font-size: 0.85rem;
    }
"""


class DocumentRenderer:
    """Converts Source Document text into a self-reporting HTML page."""

    def __init__(self) -> None:
        self._mermaid_sources = _script_sources(
            _resolve_local_script(
                "ASKPOP_MERMAID_JS",
                ["vendor/mermaid/mermaid.min.js", "vendor/mermaid/dist/mermaid.min.js", "mermaid/mermaid.min.js"],
                ["/usr/share/javascript/mermaid/mermaid.min.js", "/usr/share/nodejs/mermaid/dist/mermaid.min.js"],
            ),
            ["https://cdn.jsdelivr.net/npm/mermaid@11/dist/mermaid.min.js"],
        )
        self._mathjax_sources = _script_sources(
            _resolve_local_script(
                "ASKPOP_MATHJAX_JS",
                ["vendor/mathjax/es5/tex-svg.js", "mathjax/es5/tex-svg.js"],
                ["/usr/share/javascript/mathjax/es5/tex-svg.js", "/usr/share/mathjax/es5/tex-svg.js"],
            ),
            ["https://cdn.jsdelivr.net/npm/mathjax@3/es5/tex-svg.js"],
        )
        self._md = MarkdownIt(
            "commonmark",
            {"html": True, "linkify": False, "typographer": True},
        ).enable("table").enable("strikethrough")
        # Math must be tokenised before emphasis rules can mangle TeX.
        self._md.use(dollarmath_plugin)

        default_fence = self._md.renderer.rules["fence"]

        def custom_math_inline(tokens, idx, options, env):
            env["has_math"] = True
            return f"${html.escape(tokens[idx].content)}$"

        def custom_math_block(tokens, idx, options, env):
            env["has_math"] = True
            math_body = (tokens[idx].content or "").strip("\n")
            return f'<div class="askpop-math-block">$$\n{html.escape(math_body)}\n$$</div>\n'

        def custom_fence(tokens, idx, options, env):
            token = tokens[idx]
            info = token.info.strip().split(maxsplit=1)[0].lower() if token.info else ""
            if info != "mermaid":
                return default_fence(tokens, idx, options, env)
            env["mermaid_count"] = int(env.get("mermaid_count", 0)) + 1
            source = token.content.replace("\r\n", "\n").strip("\n")
            digest = hashlib.sha1(source.encode("utf-8", errors="replace")).hexdigest()[:12]
            return f'<div class="mermaid" data-askpop-mermaid-hash="{digest}">{html.escape(source)}</div>\n'

        self._md.renderer.rules["fence"] = custom_fence
        self._md.renderer.rules["math_inline"] = custom_math_inline
        self._md.renderer.rules["math_block"] = custom_math_block

    @property
    def mermaid_sources(self) -> list[str]:
        return list(self._mermaid_sources)

    def render_markdown_body(self, markdown_text: str) -> tuple[str, dict]:
        env: dict = {"mermaid_count": 0, "has_math": False}
        body = self._md.render(markdown_text, env)
        return body, env

    def build_page(self, text: str, mode: RenderMode, token: int = 0) -> str:
        if not (text or "").strip():
            if mode is RenderMode.MERMAID:
                return placeholder_html("Please enter Mermaid code", token)
            return placeholder_html("Please enter Markdown content", token)
        if mode is RenderMode.MERMAID:
            return self.build_mermaid_page(text, token)
        return self.build_markdown_page(text, token)

    def build_markdown_page(self, markdown_text: str, token: int = 0) -> str:
        body, env = self.render_markdown_body(markdown_text)
        needs_mermaid = "true" if env.get("mermaid_count") else "false"
        needs_math = "true" if env.get("has_math") else "false"
        return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8"/>
  <meta name="viewport" content="width=device-width, initial-scale=1"/>
  <style>
{_BASE_STYLE}
    #{CONTENT_ELEMENT_ID} {{
      max-width: 760px;
      margin: 0 auto;
      padding: 24px 30px 40px 30px;
      word-wrap: break-word;
    }}
    h1, h2 {{
      border-bottom: 1px solid #eaecef;
      padding-bottom: 0.3em;
    }}
    a {{
      color: var(--link);
    }}
    code {{
      background: var(--code-bg);
      border-radius: 3px;
      padding: 0.15em 0.35em;
      font-family: "SFMono-Regular", Menlo, Consolas, monospace;
      font-size: 85%;
    }}
    pre {{
      background: var(--code-bg);
      border: 1px solid var(--border);
      border-radius: 6px;
      padding: 14px;
      overflow: auto;
    }}
    pre > code {{
      background: transparent;
      padding: 0;
    }}
    blockquote {{
      margin: 0 0 16px 0;
      padding: 0 1em;
      color: #6a737d;
      border-left: 0.25em solid #dfe2e5;
    }}
    table {{
      border-collapse: collapse;
      margin-bottom: 16px;
    }}
    th, td {{
      border: 1px solid var(--border);
      padding: 6px 13px;
    }}
    th {{
      background: var(--code-bg);
    }}
    .mermaid {{
      margin: 0.8rem 0;
      text-align: center;
    }}
    .mermaid svg {{
      max-width: 100%;
      height: auto;
    }}
    .askpop-math-block {{
      overflow-x: auto;
    }}
  </style>
  <script>
    window.MathJax = {{
      startup: {{ typeset: false }},
      tex: {{
        inlineMath: [['$', '$']],
        displayMath: [['$$', '$$']]
      }},
      svg: {{ fontCache: "global" }},
      options: {{ skipHtmlTags: ['script', 'noscript', 'style', 'textarea', 'pre', 'code'] }}
    }};
  </script>
  <script src="qrc:///qtwebchannel/qwebchannel.js"></script>
</head>
<body>
<article id="{CONTENT_ELEMENT_ID}" class="markdown-body"></article>
<script>
{_bridge_script(token)}
  (async () => {{
    const content = document.getElementById({json.dumps(CONTENT_ELEMENT_ID)});
    content.innerHTML = {script_string_literal(body)};
    let failures = 0;
    let timedOut = false;
    try {{
      if ({needs_mermaid}) {{
        const loaded = await window.__askpopWithTimeout(
          window.__askpopLoadScripts({json.dumps(self._mermaid_sources)}),
          {LIBRARY_WAIT_MS},
        );
        if (!loaded || loaded === "__timeout__" || !window.mermaid) {{
          timedOut = true;
        }} else {{
          mermaid.initialize({{ startOnLoad: false, securityLevel: "strict", theme: "default" }});
          let index = 0;
          for (const block of Array.from(document.querySelectorAll(".mermaid"))) {{
            const sourceText = block.textContent || "";
            const renderId = `askpop_mermaid_${{index++}}`;
            try {{
              const result = await mermaid.render(renderId, sourceText);
              block.innerHTML = result && typeof result.svg === "string" ? result.svg : String(result || "");
            }} catch (error) {{
              failures += 1;
              const stray = document.getElementById("d" + renderId);
              if (stray && stray.parentNode) {{
                stray.parentNode.removeChild(stray);
              }}
              window.__askpopShowError(block, "Mermaid render failed", error && error.message ? error.message : String(error));
            }}
          }}
        }}
      }}
      if ({needs_math}) {{
        const loaded = await window.__askpopWithTimeout(
          window.__askpopLoadScripts({json.dumps(self._mathjax_sources)}),
          {LIBRARY_WAIT_MS},
        );
        if (loaded && loaded !== "__timeout__" && window.MathJax && MathJax.startup) {{
          await MathJax.startup.promise;
          await MathJax.typesetPromise([content]);
        }} else {{
          timedOut = true;
        }}
      }}
    }} catch (error) {{
      window.__askpopShowError(content, "Render failed", error && error.message ? error.message : String(error));
      window.__askpopNotify("error", error && error.message ? error.message : String(error));
      return;
    }}
    if (timedOut) {{
      window.__askpopNotify("timeout", "Rendering libraries did not load in time");
    }} else if (failures > 0) {{
      window.__askpopNotify("error", `${{failures}} diagram(s) failed to render`);
    }} else {{
      window.__askpopNotify("success", "");
    }}
  }})();
</script>
</body>
</html>
"""

    def build_mermaid_page(self, mermaid_text: str, token: int = 0) -> str:
        source_literal = script_string_literal(mermaid_text.replace("\r\n", "\n").strip())
        return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8"/>
  <meta name="viewport" content="width=device-width, initial-scale=1"/>
  <style>
{_BASE_STYLE}
    html, body {{
      height: 100%;
      overflow: hidden;
    }}
    #{STAGE_ELEMENT_ID} {{
      position: fixed;
      inset: 0;
      overflow: hidden;
      cursor: grab;
      user-select: none;
    }}
    #{STAGE_ELEMENT_ID}.askpop-panning {{
      cursor: grabbing;
    }}
    #{SCENE_ELEMENT_ID} {{
      position: absolute;
      left: 0;
      top: 0;
      width: 100%;
      height: 100%;
      display: flex;
      align-items: center;
      justify-content: center;
      transform-origin: 0 0;
    }}
    #{DIAGRAM_ELEMENT_ID} svg {{
      display: block;
    }}
  </style>
  <script src="qrc:///qtwebchannel/qwebchannel.js"></script>
</head>
<body>
<div id="{STAGE_ELEMENT_ID}"><div id="{SCENE_ELEMENT_ID}"><div id="{DIAGRAM_ELEMENT_ID}">Rendering...</div></div></div>
<script>
{_bridge_script(token)}
  window.__askpopFitScene = () => {{
    const stage = document.getElementById({json.dumps(STAGE_ELEMENT_ID)});
    const svg = document.querySelector({json.dumps(DIAGRAM_SELECTOR)});
    if (!stage || !svg) {{
      return false;
    }}
    let width = 0;
    let height = 0;
    const viewBox = svg.viewBox && svg.viewBox.baseVal;
    if (viewBox && viewBox.width > 0 && viewBox.height > 0) {{
      width = viewBox.width;
      height = viewBox.height;
    }} else {{
      const box = svg.getBBox();
      width = box.width;
      height = box.height;
    }}
    if (!(width > 0 && height > 0)) {{
      return false;
    }}
    const fit = Math.min(1.0, (stage.clientWidth * 0.94) / width, (stage.clientHeight * 0.94) / height);
    svg.removeAttribute("width");
    svg.removeAttribute("height");
    svg.style.maxWidth = "none";
    svg.style.width = `${{Math.max(1, Math.round(width * fit))}}px`;
    svg.style.height = `${{Math.max(1, Math.round(height * fit))}}px`;
    return true;
  }};
  window.__askpopBridgePromise.then((bridge) => {{
    const stage = document.getElementById({json.dumps(STAGE_ELEMENT_ID)});
    if (!bridge || !stage) {{
      return;
    }}
    const local = (event) => {{
      const rect = stage.getBoundingClientRect();
      return [event.clientX - rect.left, event.clientY - rect.top];
    }};
    stage.addEventListener("mousedown", (event) => {{
      if (event.button !== 0) {{
        return;
      }}
      event.preventDefault();
      stage.classList.add("askpop-panning");
      const [x, y] = local(event);
      bridge.beginPan(x, y);
    }});
    window.addEventListener("mousemove", (event) => {{
      if (!stage.classList.contains("askpop-panning")) {{
        return;
      }}
      const [x, y] = local(event);
      bridge.updatePan(x, y);
    }});
    window.addEventListener("mouseup", () => {{
      if (!stage.classList.contains("askpop-panning")) {{
        return;
      }}
      stage.classList.remove("askpop-panning");
      bridge.endPan();
    }});
    stage.addEventListener("wheel", (event) => {{
      event.preventDefault();
      const [x, y] = local(event);
      bridge.wheelZoom(event.deltaY, x, y);
    }}, {{ passive: false }});
  }});
  (async () => {{
    const host = document.getElementById({json.dumps(DIAGRAM_ELEMENT_ID)});
    const source = {source_literal};
    const loaded = await window.__askpopWithTimeout(
      window.__askpopLoadScripts({json.dumps(self._mermaid_sources)}),
      {LIBRARY_WAIT_MS},
    );
    if (!loaded || loaded === "__timeout__" || !window.mermaid) {{
      window.__askpopShowError(host, "Render timed out", "The Mermaid library could not be loaded.");
      window.__askpopNotify("timeout", "Mermaid library did not load in time");
      return;
    }}
    try {{
      mermaid.initialize({{ startOnLoad: false, securityLevel: "strict", theme: "default" }});
      const result = await mermaid.render("askpop_mermaid_scene", source);
      host.innerHTML = result && typeof result.svg === "string" ? result.svg : String(result || "");
      if (!host.querySelector("svg")) {{
        throw new Error("Mermaid returned no SVG");
      }}
      window.__askpopFitScene();
      window.__askpopNotify("success", "");
    }} catch (error) {{
      const stray = document.getElementById("daskpop_mermaid_scene");
      if (stray && stray.parentNode) {{
        stray.parentNode.removeChild(stray);
      }}
      const message = error && error.message ? error.message : String(error);
      window.__askpopShowError(host, "Render error", message);
      window.__askpopNotify("error", message);
    }}
  }})();
</script>
</body>
</html>
"""


# Serialise the rendered DOM without scripts so saved HTML opens as a static document.
SERIALIZE_DOCUMENT_JS = """
(() => {
  const clone = document.documentElement.cloneNode(true);
  for (const script of Array.from(clone.querySelectorAll("script"))) {
    script.parentNode.removeChild(script);
  }
  const stage = clone.querySelector("#askpop-stage");
  if (stage) {
    stage.style.position = "static";
  }
  return "<!doctype html>\\n" + clone.outerHTML;
})();
"""

DOCUMENT_TEXT_JS = f"""
(() => {{
  const content = document.getElementById({json.dumps(CONTENT_ELEMENT_ID)});
  return (content || document.body).innerText;
}})();
"""
