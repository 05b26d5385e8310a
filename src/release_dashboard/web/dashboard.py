"""Dashboard HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Release Dashboard</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --none: #6e7681; --building: #58a6ff; --success: #3fb950; --failure: #f85149;
    --review: #d29922; --accent: #58a6ff; --link: #58a6ff;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 1280px; margin: 0 auto; padding: 24px 16px; }

  /* Header */
  header { display: flex; justify-content: space-between; align-items: center;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; }
  header h1 { font-size: 20px; font-weight: 600; }
  .status-line { font-size: 12px; color: var(--text-dim); display: flex; gap: 12px; align-items: center; }
  .status-line button { background: var(--surface); color: var(--text-muted); border: 1px solid var(--border);
                        padding: 4px 10px; border-radius: 4px; cursor: pointer; font-size: 12px; }
  .status-line button:hover { color: var(--text); border-color: var(--text-muted); }

  /* Project card */
  .project { background: var(--surface); border: 1px solid var(--border);
             border-radius: 8px; padding: 16px; margin-bottom: 20px; }
  .project h2 { font-size: 16px; margin-bottom: 8px; display: flex; align-items: center; gap: 8px; }
  .project h2 img { width: 24px; height: 24px; border-radius: 6px; }
  .project .error { color: var(--failure); font-size: 13px; margin-bottom: 8px; }

  /* Track grid */
  table { width: 100%; border-collapse: collapse; font-size: 12px; }
  th { text-align: left; color: var(--text-muted); font-weight: 500; padding: 4px 6px;
       border-bottom: 1px solid var(--border); }
  td { padding: 6px; border-bottom: 1px solid var(--border); vertical-align: top; }
  td.branch { font-family: monospace; font-size: 12px; white-space: nowrap; }
  .cell { display: flex; flex-direction: column; gap: 2px; }
  .badge { display: inline-block; padding: 1px 8px; border-radius: 12px; font-size: 10px;
           font-weight: 600; text-transform: uppercase; letter-spacing: 0.5px; width: fit-content; }
  .badge.none { background: rgba(110,118,129,0.15); color: var(--none); }
  .badge.building, .badge.queued { background: rgba(88,166,255,0.15); color: var(--building); }
  .badge.success { background: rgba(63,185,80,0.15); color: var(--success); }
  .badge.failure { background: rgba(248,81,73,0.15); color: var(--failure); }
  .badge.review { background: rgba(210,153,34,0.15); color: var(--review); }
  .version { font-family: monospace; color: var(--text-muted); }
  .version a { color: var(--link); text-decoration: none; }
  .version a:hover { text-decoration: underline; }
  .reason { color: var(--text-dim); }

  /* Empty state */
  .empty { text-align: center; padding: 48px; color: var(--text-muted); }
  .empty h3 { margin-bottom: 8px; }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>Release Dashboard</h1>
    <div class="status-line">
      <span id="status">Connecting...</span>
      <span id="updated"></span>
      <button onclick="refresh(false)">Refresh</button>
      <button onclick="refresh(true)">Full refresh</button>
    </div>
  </header>
  <div id="content">
    <div class="empty"><h3>Loading...</h3></div>
  </div>
</div>

<script>
const API = '';
const TRACKS = [
  ['dev', 'Dev'], ['alpha', 'Alpha'], ['release', 'Release'],
  ['storeInternal', 'Internal'], ['storeAlpha', 'Store Alpha'],
  ['storeRollout', 'Rollout'], ['storeRelease', 'Store'], ['prevRelease', 'Previous'],
];
let reloadTimer = null;

async function fetchJSON(path, options) {
  const res = await fetch(API + path, options);
  if (!res.ok) return null;
  return res.json();
}

async function loadTracks() {
  const content = document.getElementById('content');
  const data = await fetchJSON('/api/tracks');
  if (!data || !data.projects || data.projects.length === 0) {
    content.innerHTML = '<div class="empty"><h3>No data yet</h3><p>Waiting for the first refresh.</p></div>';
    return;
  }
  document.getElementById('updated').textContent =
    data.lastUpdated ? 'Updated ' + new Date(data.lastUpdated).toLocaleTimeString() : '';
  content.innerHTML = data.projects.map(renderProject).join('');
}

function renderProject(project) {
  let html = `<div class="project"><h2>`;
  if (project.iconUrl) html += `<img src="${esc(project.iconUrl)}" alt="">`;
  html += `${esc(project.name)}</h2>`;
  if (project.error) html += `<div class="error">${esc(project.error)}</div>`;
  if (project.branches.length === 0) {
    return html + '<div class="empty">No builds</div></div>';
  }
  html += '<table><tr><th>Branch</th>' + TRACKS.map(t => `<th>${t[1]}</th>`).join('') + '</tr>';
  for (const branch of project.branches) {
    html += `<tr><td class="branch">${esc(branch.branch)}</td>`;
    for (const [key] of TRACKS) html += `<td>${renderSlot(branch.tracks[key])}</td>`;
    html += '</tr>';
  }
  return html + '</table></div>';
}

function renderSlot(slot) {
  if (!slot) return '';
  let html = '<div class="cell">';
  for (const platform of ['ios', 'android']) {
    const status = slot[platform];
    if (!status) continue;
    const version = slot[platform + 'VersionString'] || slot[platform + 'Version'];
    const url = slot[platform + 'Url'];
    html += `<span class="badge ${esc(badgeClass(status))}">${platform} ${esc(status)}</span>`;
    if (version) {
      html += url
        ? `<span class="version"><a href="${esc(url)}" target="_blank" rel="noopener">${esc(version)}</a></span>`
        : `<span class="version">${esc(version)}</span>`;
    }
    const fraction = slot[platform + 'UserFraction'];
    if (fraction != null && fraction < 1) html += `<span class="reason">${Math.round(fraction * 100)}%</span>`;
    const reason = slot[platform + 'StatusReason'];
    if (reason) html += `<span class="reason">${esc(reason)}</span>`;
  }
  return html + '</div>';
}

function badgeClass(status) {
  if (status === 'review' || status === 'pending') return 'review';
  return status;
}

function esc(s) {
  if (s === null || s === undefined) return '';
  const d = document.createElement('div');
  d.textContent = String(s);
  return d.innerHTML;
}

async function refresh(full) {
  await fetchJSON('/api/refresh' + (full ? '?full=true' : ''), { method: 'POST' });
  loadTracks();
}

// Coalesce bursts of events into one reload
function scheduleReload() {
  if (reloadTimer) clearTimeout(reloadTimer);
  reloadTimer = setTimeout(loadTracks, 250);
}

function connect() {
  const source = new EventSource(API + '/api/events');
  const status = document.getElementById('status');
  source.addEventListener('connected', e => {
    const data = JSON.parse(e.data);
    status.textContent = data.status || 'Idle';
  });
  source.addEventListener('refresh-status', e => {
    const data = JSON.parse(e.data);
    status.textContent = data.status || 'Idle';
  });
  for (const name of ['refresh', 'store-updated', 'data-updated']) {
    source.addEventListener(name, scheduleReload);
  }
  source.onerror = () => { status.textContent = 'Disconnected, retrying...'; };
}

loadTracks();
connect();
</script>
</body>
</html>"""
