"""Self-contained HTML report for the authentication context inventory.

Usage:
    from .report_builder import ReportBuilder

    rb = ReportBuilder(title="Authentication Context Inventory", subtitle="contoso.onmicrosoft.com")
    rb.add_kv("Summary", {"References": 42, "Contexts": 3})
    rb.add_table("Sites", columns=["Entity", "Context"], rows=[["Finance", "c1"]])
    rb.save("authctx-report.html")
"""

import os
import webbrowser
from datetime import datetime, timezone
from html import escape
from typing import Dict, List, Optional

from .models import RelationKind


def _esc(val) -> str:
    return escape(str(val)) if val is not None else ""


# Badge class per relation kind
RELATION_BADGES = {
    RelationKind.DIRECT.value: "badge-direct",
    RelationKind.INHERITED_VIA_LABEL.value: "badge-label",
    RelationKind.INHERITED_VIA_GUESS.value: "badge-guess",
}


def relation_badge(relation: str) -> str:
    css = RELATION_BADGES.get(relation)
    if not css:
        return _esc(relation)
    return f'<span class="badge {css}">{_esc(relation)}</span>'


_CSS = """\
*,*::before,*::after{box-sizing:border-box;margin:0;padding:0}
:root{
  --bg:#f6f8fa;--bg-card:#ffffff;--bg-head:#eef1f4;
  --text:#1f2328;--text-secondary:#59636e;
  --border:#d1d9e0;--accent:#0969da;
  --success:#1a7f37;--warning:#9a6700;--error:#cf222e;
  --font-sans:ui-sans-serif,system-ui,-apple-system,"Segoe UI",sans-serif;
  --font-mono:ui-monospace,"SF Mono",Consolas,monospace;
}
body{font-family:var(--font-sans);background:var(--bg);color:var(--text);line-height:1.5}
.container{max-width:1280px;margin:0 auto;padding:2rem 1.5rem}
.report-header{padding:1.25rem 1.5rem;background:var(--bg-card);border:1px solid var(--border);
  border-left:4px solid var(--accent);border-radius:8px;margin-bottom:1.5rem}
.report-header h1{font-size:1.3rem;font-weight:600}
.report-header .subtitle{font-size:.9rem;color:var(--text-secondary)}
.meta-row{margin-top:.35rem;font-size:.8rem;color:var(--text-secondary)}
.section{margin-bottom:1.75rem}
.section-title{font-size:1rem;font-weight:600;margin-bottom:.75rem;padding-bottom:.35rem;
  border-bottom:1px solid var(--border)}
.cards-grid{display:grid;grid-template-columns:repeat(auto-fit,minmax(180px,1fr));gap:.75rem}
.card{padding:1rem;background:var(--bg-card);border:1px solid var(--border);border-radius:8px}
.card-label{font-size:.75rem;color:var(--text-secondary);text-transform:uppercase;letter-spacing:.04em}
.card-value{font-size:1.4rem;font-weight:700}
table{width:100%;border-collapse:collapse;font-size:.82rem;background:var(--bg-card);
  border:1px solid var(--border)}
thead th{text-align:left;padding:.5rem .65rem;background:var(--bg-head);color:var(--text-secondary);
  font-weight:600;border-bottom:1px solid var(--border);font-size:.72rem;text-transform:uppercase}
tbody td{padding:.45rem .65rem;border-bottom:1px solid var(--border);vertical-align:top}
tbody tr.placeholder td{color:var(--text-secondary);font-style:italic}
td.mono{font-family:var(--font-mono);font-size:.75rem;color:var(--text-secondary)}
.badge{display:inline-block;padding:.1rem .5rem;border-radius:12px;font-size:.72rem;font-weight:600}
.badge-direct{background:#dafbe1;color:var(--success)}
.badge-label{background:#ddf4ff;color:var(--accent)}
.badge-guess{background:#fff8c5;color:var(--warning)}
.status-banner{padding:1rem 1.25rem;background:var(--bg-card);border:1px solid var(--border);
  border-radius:8px;margin-bottom:1.5rem;font-weight:600}
.status-banner.banner-success{color:var(--success)}
.status-banner.banner-warning{color:var(--warning)}
.status-banner.banner-error{color:var(--error)}
.panel{padding:1rem 1.25rem;background:var(--bg-card);border:1px solid var(--border);
  border-radius:8px;font-size:.85rem;color:var(--text-secondary)}
.report-footer{margin-top:2rem;font-size:.75rem;color:var(--text-secondary);text-align:center}
@media print{body{background:#fff}.report-header,.card,table{break-inside:avoid}}"""


class ReportBuilder:
    """Build a self-contained HTML report from sections."""

    def __init__(self, title: str, subtitle: str = ""):
        self.title = title
        self.subtitle = subtitle
        self._sections: List[str] = []

    def add_kv(self, heading: str, data: dict):
        """Add a grid of metric cards."""
        cards = "".join(
            f'<div class="card"><div class="card-label">{_esc(label)}</div>'
            f'<div class="card-value">{_esc(value)}</div></div>'
            for label, value in data.items()
        )
        self._sections.append(
            f'<div class="section"><div class="section-title">{_esc(heading)}</div>'
            f'<div class="cards-grid">{cards}</div></div>'
        )

    def add_table(self, heading: str, columns: List[str], rows: List[List[str]],
                  col_styles: Optional[Dict[int, str]] = None,
                  row_classes: Optional[List[str]] = None):
        """Add a data table.

        Cells are inserted as-is and may carry pre-escaped HTML. col_styles
        maps column index to a CSS class applied to each <td>.
        """
        col_styles = col_styles or {}
        row_classes = row_classes or []
        ths = "".join(f"<th>{_esc(c)}</th>" for c in columns)

        body = []
        for n, row in enumerate(rows):
            tds = "".join(
                f'<td class="{col_styles[i]}">{cell}</td>' if i in col_styles else f"<td>{cell}</td>"
                for i, cell in enumerate(row)
            )
            css = row_classes[n] if n < len(row_classes) and row_classes[n] else ""
            body.append(f'<tr class="{css}">{tds}</tr>' if css else f"<tr>{tds}</tr>")

        self._sections.append(
            f'<div class="section"><div class="section-title">{_esc(heading)}</div>'
            f'<table><thead><tr>{ths}</tr></thead><tbody>{"".join(body)}</tbody></table></div>'
        )

    def add_panel(self, heading: str, content: str):
        """Add a free-form HTML block."""
        self._sections.append(
            f'<div class="section"><div class="section-title">{_esc(heading)}</div>'
            f'<div class="panel">{content}</div></div>'
        )

    def add_status(self, message: str, level: str = "success"):
        """Add a status banner (success / warning / error)."""
        css_class = f"banner-{level}" if level in ("success", "warning", "error") else ""
        self._sections.append(f'<div class="status-banner {css_class}">{_esc(message)}</div>')

    def render(self) -> str:
        """Return the complete HTML document as a string."""
        generated_at = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
        subtitle_html = f'<div class="subtitle">{_esc(self.subtitle)}</div>' if self.subtitle else ""

        parts = [
            '<!DOCTYPE html>\n<html lang="en">\n<head>\n<meta charset="UTF-8">\n'
            '<meta name="viewport" content="width=device-width, initial-scale=1.0">\n'
            f"<title>{_esc(self.title)}</title>\n<style>\n{_CSS}\n</style>\n</head>",
            "<body>",
            f'<div class="container">\n<div class="report-header"><h1>{_esc(self.title)}</h1>'
            f'{subtitle_html}<div class="meta-row">Generated {generated_at}</div></div>',
        ]
        parts.extend(self._sections)
        parts.append(f'<div class="report-footer">Generated by authctx on {generated_at}</div>\n</div>')
        parts.append("</body></html>")
        return "\n".join(parts)

    def save(self, path: Optional[str] = None, open_browser: bool = True) -> str:
        """Write the report to *path* and optionally open it in the default browser.

        Returns the absolute path of the written file.
        """
        if path is None:
            date_str = datetime.now().strftime("%Y-%m-%d")
            slug = self.title.lower().replace(" ", "-")[:30]
            path = f"{slug}-report-{date_str}.html"

        abs_path = os.path.abspath(path)
        with open(abs_path, "w", encoding="utf-8") as f:
            f.write(self.render())

        if open_browser:
            try:
                webbrowser.open(f"file://{abs_path}")
            except webbrowser.Error:
                pass  # the CLI prints the path anyway

        return abs_path
