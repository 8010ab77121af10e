"""Browser beacon script served from GET /sites/{siteId}/script."""

import json

_FULL_SCRIPT = """(function(){
  var s=%(site)s,e=%(endpoint)s;
  if(navigator.doNotTrack==='1'||navigator.globalPrivacyControl)return;
  function sid(){
    try{
      var v=sessionStorage.getItem('sa_s');
      if(!v){v=Math.random().toString(36).slice(2)+Date.now().toString(36);sessionStorage.setItem('sa_s',v);}
      return v;
    }catch(_){return undefined;}
  }
  function send(d){
    try{
      d.s=s;d.sid=sid();
      var b=JSON.stringify(d);
      if(navigator.sendBeacon&&navigator.sendBeacon(e,b))return;
      fetch(e,{method:'POST',body:b,keepalive:true,headers:{'Content-Type':'application/json'}}).catch(function(){});
    }catch(_){}
  }
  function pv(){
    send({e:'pageview',u:location.href,r:document.referrer||undefined,t:document.title,sw:screen.width,sh:screen.height});
  }
  var push=history.pushState;
  history.pushState=function(){push.apply(history,arguments);pv();};
  window.addEventListener('popstate',pv);
  window.sa=function(name,props){
    var p=props||{};p.name=name;
    send({e:'event',u:location.href,p:p});
  };
  pv();
})();
"""

_MINIMAL_SCRIPT = """(function(){
  var s=%(site)s,e=%(endpoint)s;
  if(navigator.doNotTrack==='1'||navigator.globalPrivacyControl)return;
  try{
    var sid=sessionStorage.getItem('sa_s')||Math.random().toString(36).slice(2);
    sessionStorage.setItem('sa_s',sid);
    navigator.sendBeacon(e,JSON.stringify({s:s,sid:sid,e:'pageview',u:location.href,r:document.referrer||undefined,t:document.title,sw:screen.width,sh:screen.height}));
  }catch(_){}
})();
"""


def render_tracking_script(site_id: str, api: str, minimal: bool = False) -> str:
    """
    Render the beacon script for a site.

    The full script tracks SPA navigation and exposes window.sa(name, props)
    for custom events; the minimal one sends a single pageview.
    """
    endpoint = api.rstrip("/") + "/collect"
    # json.dumps yields a safely quoted JS string literal
    values = {"site": json.dumps(site_id), "endpoint": json.dumps(endpoint)}
    template = _MINIMAL_SCRIPT if minimal else _FULL_SCRIPT
    return template % values
