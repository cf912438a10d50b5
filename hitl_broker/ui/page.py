"""Single-page operator UI served at ``GET /``.

No build step: the page is one HTML document with inline script.  It lists
pending questions, posts answers and cancellations, and refreshes whenever
``/events`` reports a change.  A ``?token=`` on the page URL is forwarded
on every request.
"""

_PAGE = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>HITL broker</title>
<style>
  body { font-family: system-ui, sans-serif; margin: 2rem; max-width: 60rem; }
  .q { border: 1px solid #ccc; border-radius: 6px; padding: 1rem; margin-bottom: 1rem; }
  .key { font-family: monospace; color: #555; }
  .age { color: #888; font-size: 0.85em; }
  textarea { width: 100%; min-height: 4rem; }
  #status { color: #888; font-size: 0.85em; }
  .empty { color: #888; }
</style>
</head>
<body>
<h1>Pending questions</h1>
<div id="status">connecting...</div>
<div id="questions"></div>
<script>
const token = new URLSearchParams(location.search).get("token") || "";
const headers = token ? {"x-hitl-token": token} : {};

async function api(path, body) {
  const init = body === undefined
    ? {headers}
    : {method: "POST", headers: {...headers, "content-type": "application/json"}, body: JSON.stringify(body)};
  const res = await fetch(path, init);
  if (!res.ok) {
    let reason = res.status + "";
    try { reason = (await res.json()).error || reason; } catch (e) {}
    throw new Error(reason);
  }
  return res.json();
}

function esc(text) {
  const div = document.createElement("div");
  div.textContent = text;
  return div.innerHTML;
}

async function refresh() {
  const box = document.getElementById("questions");
  let rows;
  try {
    rows = await api("/questions");
  } catch (err) {
    box.innerHTML = '<p class="empty">failed to load: ' + esc(err.message) + '</p>';
    return;
  }
  if (!rows.length) {
    box.innerHTML = '<p class="empty">No pending questions.</p>';
    return;
  }
  box.innerHTML = "";
  for (const q of rows) {
    const el = document.createElement("div");
    el.className = "q";
    el.innerHTML =
      '<div class="key">' + esc(q.key) + ' <span class="age">' + q.ageSeconds + 's</span></div>' +
      '<p>' + esc(q.question) + '</p>' +
      '<textarea></textarea>' +
      '<button data-act="answer">Answer</button> <button data-act="cancel">Cancel</button>';
    el.querySelector('[data-act="answer"]').onclick = async () => {
      await api("/answer", {key: q.key, response: el.querySelector("textarea").value});
      refresh();
    };
    el.querySelector('[data-act="cancel"]').onclick = async () => {
      await api("/cancel", {key: q.key});
      refresh();
    };
    box.appendChild(el);
  }
}

const source = new EventSource("/events" + (token ? "?token=" + encodeURIComponent(token) : ""));
source.onopen = () => { document.getElementById("status").textContent = "live"; };
source.onerror = () => { document.getElementById("status").textContent = "reconnecting..."; };
source.onmessage = () => refresh();
refresh();
</script>
</body>
</html>
"""


def render_page() -> str:
    return _PAGE
