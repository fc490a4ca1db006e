"""HTML dashboard and fallback icon for the web interface.

The dashboard is static HTML that fetches data dynamically via JavaScript from
/api/pages, /api/config and /api/monitor. The page id comes from the URL path.

Separated from api.py for better maintainability.
"""

import html

FALLBACK_ICON_SVG = """<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 64 64" width="64" height="64">
  <rect width="64" height="64" rx="14" fill="#12121a"/>
  <circle cx="32" cy="32" r="18" fill="none" stroke="#00ff66" stroke-width="5"/>
  <path d="M14 33h10l4-9 6 18 5-12h11" fill="none" stroke="#00fff9" stroke-width="4"
        stroke-linecap="round" stroke-linejoin="round"/>
</svg>
"""

HTML_DASHBOARD = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Kuma Dash</title>
    <link rel="icon" href="/icon.svg" type="image/svg+xml">
    <style>
        :root {
            --bg-dark: #0a0a0f;
            --bg-panel: #12121a;
            --cyan: #00fff9;
            --yellow: #f0ff00;
            --orange: #ff8800;
            --green: #00ff66;
            --red: #ff0040;
            --text: #e0e0e0;
            --text-dim: #606080;
            --border: #2a2a3a;
        }

        * { margin: 0; padding: 0; box-sizing: border-box; }

        body {
            font-family: 'JetBrains Mono', 'Fira Code', 'Consolas', monospace;
            background: var(--bg-dark);
            color: var(--text);
            min-height: 100vh;
        }

        header {
            display: flex;
            align-items: center;
            gap: 1rem;
            padding: 1rem 1.5rem;
            border-bottom: 1px solid var(--border);
            background: var(--bg-panel);
        }

        header img { width: 40px; height: 40px; border-radius: 8px; }
        header h1 { font-size: 1.2rem; color: var(--cyan); }
        header p { font-size: 0.8rem; color: var(--text-dim); }
        header .links { margin-left: auto; display: flex; gap: 1rem; font-size: 0.8rem; }
        header .links a { color: var(--text-dim); text-decoration: none; }

        nav.tabs {
            display: flex;
            flex-wrap: wrap;
            gap: 0.5rem;
            padding: 0.75rem 1.5rem;
            border-bottom: 1px solid var(--border);
        }

        nav.tabs a {
            display: inline-flex;
            align-items: center;
            gap: 0.4rem;
            padding: 0.35rem 0.8rem;
            border: 1px solid var(--border);
            border-radius: 4px;
            color: var(--text);
            text-decoration: none;
            font-size: 0.8rem;
        }

        nav.tabs a.active { border-color: var(--cyan); color: var(--cyan); }
        nav.tabs a.unavailable { border-color: var(--red); color: var(--red); }

        .dot { width: 8px; height: 8px; border-radius: 50%; background: var(--green); }
        .dot.down { background: var(--red); }
        .dot.pending { background: var(--yellow); }
        .dot.maintenance { background: var(--orange); }
        .dot.unknown { background: var(--text-dim); }

        main { padding: 1.5rem; max-width: 1100px; margin: 0 auto; }

        .banner {
            padding: 0.75rem 1rem;
            margin-bottom: 1rem;
            border: 1px solid var(--red);
            color: var(--red);
            background: rgba(255, 0, 64, 0.08);
            font-size: 0.85rem;
        }

        .banner.maintenance { border-color: var(--orange); color: var(--orange); background: rgba(255, 136, 0, 0.08); }
        .banner.incident { border-color: var(--yellow); color: var(--yellow); background: rgba(240, 255, 0, 0.06); }

        .summary { display: flex; gap: 1rem; margin-bottom: 1.5rem; font-size: 0.85rem; }
        .summary span b { color: var(--cyan); }

        .group { margin-bottom: 1.5rem; }
        .group h2 { font-size: 0.9rem; color: var(--text-dim); margin-bottom: 0.5rem; text-transform: uppercase; }

        .monitor {
            display: flex;
            align-items: center;
            justify-content: space-between;
            padding: 0.6rem 0.8rem;
            border: 1px solid var(--border);
            background: var(--bg-panel);
            margin-bottom: 0.4rem;
            font-size: 0.85rem;
        }

        .monitor .name { display: flex; align-items: center; gap: 0.5rem; }
        .beats { display: flex; gap: 2px; }
        .beats i { width: 5px; height: 16px; border-radius: 1px; background: var(--green); }
        .beats i.down { background: var(--red); }
        .beats i.pending { background: var(--yellow); }
        .beats i.maintenance { background: var(--orange); }
        .uptime { color: var(--text-dim); min-width: 4rem; text-align: right; }
    </style>
</head>
<body>
    <header>
        <img id="site-icon" src="/icon.svg" alt="">
        <div>
            <h1 id="site-title">Kuma Dash</h1>
            <p id="site-description"></p>
        </div>
        <nav class="links" id="links"></nav>
    </header>
    <nav class="tabs" id="tabs"></nav>
    <main>
        <div id="banners"></div>
        <div class="summary" id="summary"></div>
        <div id="groups"></div>
    </main>
    <script>
        const STATUS_KEYS = {0: 'down', 1: 'up', 2: 'pending', 3: 'maintenance'};
        const REFRESH_MS = 60000;

        function currentPageId() {
            const segment = window.location.pathname.replace(/^\\/+|\\/+$/g, '');
            return segment ? decodeURIComponent(segment) : '';
        }

        function query(pageId) {
            return pageId ? '?pageId=' + encodeURIComponent(pageId) : '';
        }

        function el(tag, attrs, text) {
            const node = document.createElement(tag);
            Object.entries(attrs || {}).forEach(([key, value]) => node.setAttribute(key, value));
            if (text !== undefined) node.textContent = text;
            return node;
        }

        async function getJson(url) {
            const response = await fetch(url, {cache: 'no-store'});
            return response.json();
        }

        function renderTabs(data, pageId) {
            const nav = document.getElementById('tabs');
            nav.replaceChildren();
            const activeId = pageId || (data.tabs.length ? data.tabs[0].id : '');
            data.tabs.forEach(tab => {
                const classes = [];
                if (tab.id === activeId) classes.push('active');
                if (tab.health === 'unavailable') classes.push('unavailable');
                const link = el('a', {href: '/' + encodeURIComponent(tab.id), class: classes.join(' ')});
                if (tab.health === 'unavailable') {
                    link.title = (tab.failureType || 'unknown') + ': ' + (tab.failureMessage || '');
                }
                link.appendChild(el('span', {class: 'dot' + (tab.health === 'unavailable' ? ' down' : '')}));
                link.appendChild(document.createTextNode(tab.title));
                nav.appendChild(link);
            });
        }

        function renderConfig(data) {
            const banners = document.getElementById('banners');
            banners.replaceChildren();
            document.getElementById('site-title').textContent = data.config.title || 'Kuma Dash';
            document.getElementById('site-description').textContent = data.config.description || '';
            document.getElementById('site-icon').src = data.config.icon || '/icon.svg';
            document.title = data.config.title || 'Kuma Dash';
            const links = document.getElementById('links');
            links.replaceChildren();
            const features = data.features || {};
            if (features.editThisPage) {
                links.appendChild(el('a', {href: '/api/manage-status-page'}, 'Edit this page'));
            }
            if (features.showStarButton) {
                links.appendChild(el('a', {href: 'https://github.com/louislam/uptime-kuma', target: '_blank', rel: 'noopener'}, '\u2605 Star'));
            }
            if (!data.success) {
                banners.appendChild(el('div', {class: 'banner'}, 'Status page unavailable: ' + (data.error || data.failureType)));
            }
            if (data.incident) {
                banners.appendChild(el('div', {class: 'banner incident'}, data.incident.title || 'Incident'));
            }
            (data.maintenanceList || []).filter(m => m.status === 'under-maintenance').forEach(m => {
                banners.appendChild(el('div', {class: 'banner maintenance'}, 'Maintenance: ' + (m.title || '')));
            });
        }

        function renderMonitors(data) {
            const summary = document.getElementById('summary');
            const groups = document.getElementById('groups');
            summary.replaceChildren();
            groups.replaceChildren();

            const counts = data.counts || {};
            ['total', 'up', 'down', 'pending', 'maintenance'].forEach(key => {
                const item = el('span', {}, key + ': ');
                item.appendChild(el('b', {}, String(counts[key] || 0)));
                summary.appendChild(item);
            });

            data.monitorGroups.forEach(group => {
                const section = el('section', {class: 'group'});
                section.appendChild(el('h2', {}, group.name || ''));
                (group.monitorList || []).forEach(monitor => {
                    const beats = data.heartbeatList[String(monitor.id)] || [];
                    const latest = beats.length ? beats[beats.length - 1] : null;
                    const state = latest ? (STATUS_KEYS[latest.status] || 'unknown') : 'unknown';
                    const row = el('div', {class: 'monitor'});
                    const name = el('div', {class: 'name'});
                    name.appendChild(el('span', {class: 'dot ' + state}));
                    name.appendChild(document.createTextNode(monitor.name || String(monitor.id)));
                    row.appendChild(name);
                    const bar = el('div', {class: 'beats'});
                    beats.slice(-30).forEach(beat => bar.appendChild(el('i', {class: STATUS_KEYS[beat.status] || 'unknown'})));
                    row.appendChild(bar);
                    const uptime = data.uptimeList[monitor.id + '_24'];
                    row.appendChild(el('span', {class: 'uptime'}, uptime === undefined ? '-' : (uptime * 100).toFixed(2) + '%'));
                    section.appendChild(row);
                });
                groups.appendChild(section);
            });
        }

        async function refresh() {
            const pageId = currentPageId();
            try {
                const [pages, config, monitor] = await Promise.all([
                    getJson('/api/pages'),
                    getJson('/api/config' + query(pageId)),
                    getJson('/api/monitor' + query(pageId)),
                ]);
                renderTabs(pages, pageId);
                renderConfig(config);
                renderMonitors(monitor);
            } catch (error) {
                console.error('Failed to refresh dashboard', error);
            }
        }

        refresh();
        setInterval(refresh, REFRESH_MS);
    </script>
</body>
</html>
"""

HTML_ERROR_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <link rel="icon" href="/icon.svg" type="image/svg+xml">
    <style>
        body {{
            font-family: 'JetBrains Mono', 'Fira Code', 'Consolas', monospace;
            background: #0a0a0f;
            color: #e0e0e0;
            display: flex;
            align-items: center;
            justify-content: center;
            min-height: 100vh;
            margin: 0;
        }}
        .card {{ max-width: 640px; padding: 2rem; border: 1px solid #ff0040; background: #12121a; }}
        h1 {{ color: #ff0040; font-size: 1.2rem; margin: 0 0 1rem; }}
        .status {{ color: #f0ff00; margin-bottom: 1rem; }}
        pre {{ white-space: pre-wrap; color: #606080; font-size: 0.8rem; }}
        a {{ color: #00fff9; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{title}</h1>
        <div class="status">{status}</div>
        <pre>{diagnostics}</pre>
        <a href="/">Back to dashboard</a>
    </div>
</body>
</html>
"""


def render_error_page(title: str, diagnostics: str, status_code: int | None, status_message: str | None) -> str:
    """Render the availability error page with escaped details."""
    status = " ".join(part for part in (str(status_code) if status_code else "", status_message or "") if part)
    return HTML_ERROR_PAGE.format(
        title=html.escape(title),
        status=html.escape(status or "No HTTP response"),
        diagnostics=html.escape(diagnostics),
    )
