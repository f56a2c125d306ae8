"""Single-page dashboard served at ``/``; all data arrives over ``/ws``."""

from __future__ import annotations

from gpubridge import __version__

_HTML = """\
<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8"/>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<title>Intel GPU Monitor</title>
<style>
*{margin:0;padding:0;box-sizing:border-box}
body{background:#111;color:#eee;font-family:system-ui,sans-serif;padding:16px}
h1{font-size:1.1rem;color:#7cf;margin-bottom:4px}
#status{color:#f55;font-size:.8rem;min-height:1.2em;margin-bottom:12px}
.grid{display:grid;grid-template-columns:repeat(auto-fit,minmax(160px,1fr));gap:10px}
.card{background:#1a1a2e;border-radius:8px;padding:10px}
.card h2{font-size:.7rem;color:#aaa;text-transform:uppercase;letter-spacing:.5px}
.card .val{font-size:1.4rem;font-weight:700;font-variant-numeric:tabular-nums}
table{width:100%;margin-top:16px;border-collapse:collapse;font-size:.8rem}
th,td{text-align:left;padding:4px 6px;border-bottom:1px solid #222}
th{color:#aaa;font-weight:400}
td.media{color:#bf5}
footer{margin-top:16px;color:#555;font-size:.7rem}
</style>
</head>
<body>
<h1>Intel GPU Monitor</h1>
<div id="status">Connecting&hellip;</div>
<div class="grid" id="cards"></div>
<table>
<thead><tr><th>PID</th><th>Command</th><th>Process</th><th>Media</th></tr></thead>
<tbody id="procs"></tbody>
</table>
<footer>gpubridge __VERSION__</footer>
<script>
const STATUS=document.getElementById("status");
const CARDS=document.getElementById("cards");
const PROCS=document.getElementById("procs");

function fmt(v,d){return typeof v==="number"?v.toFixed(d):"--";}
function esc(s){const e=document.createElement("span");e.textContent=s==null?"":String(s);return e.innerHTML;}

function render(m){
  if(!m.available||!m.data){STATUS.textContent="GPU data unavailable";CARDS.innerHTML="";PROCS.innerHTML="";return;}
  STATUS.textContent="";
  const d=m.data,f=d.frequency||{},p=d.power||{},r=d.rc6||{},e=d.engines||{};
  const cards=[["Frequency",fmt(f.actual,0)+" MHz"],["Requested",fmt(f.requested,0)+" MHz"],
    ["GPU Power",fmt(p.GPU,1)+" W"],["Package Power",fmt(p.Package,1)+" W"],["RC6 Idle",fmt(r.value,1)+" %"]];
  for(const name of Object.keys(e)){cards.push([name,fmt(e[name].busy,1)+" %"]);}
  CARDS.innerHTML=cards.map(c=>'<div class="card"><h2>'+esc(c[0])+'</h2><div class="val">'+esc(c[1])+'</div></div>').join("");
  PROCS.innerHTML=(m.processes||[]).map(x=>'<tr><td>'+esc(x.pid)+'</td><td>'+esc(x.command)+
    '</td><td>'+esc(x.name)+'</td><td class="media">'+esc(x.media)+'</td></tr>').join("");
}

let retry=0;
function connect(){
  const proto=location.protocol==="https:"?"wss:":"ws:";
  const ws=new WebSocket(proto+"//"+location.host+"/ws");
  ws.onopen=()=>{retry=0;};
  ws.onclose=()=>{STATUS.textContent="Disconnected \\u2013 reconnecting\\u2026";setTimeout(connect,Math.min(1000*2**retry++,8000));};
  ws.onerror=()=>ws.close();
  ws.onmessage=ev=>render(JSON.parse(ev.data));
}
connect();
</script>
</body>
</html>
"""


def render_page() -> str:
    return _HTML.replace("__VERSION__", __version__)
