"""tvbox.py - TVBox-compatible config feed built from the source registry."""
import base64
import json
from typing import Any, Dict, List

from models import Source

CATEGORIES = ['電影', '電視劇', '綜藝', '動漫', '紀錄片', '短劇']

PLAY_FLAGS = [
    'youku', 'qq', 'iqiyi', 'qiyi', 'letv', 'sohu', 'tudou', 'pptv',
    'mgtv', 'wasu', 'bilibili', 'le', 'duoduozy', 'renrenmi', 'xigua',
    '優酷', '騰訊', '愛奇藝', '奇藝', '樂視', '搜狐', '土豆', 'PPTV',
    '芒果', '華數', '嗶哩', '1905',
]

AD_HOSTS = [
    'mimg.0c1q0l.cn', 'www.googletagmanager.com', 'www.google-analytics.com',
    'mc.usihnbcq.cn', 'mg.g1mm3d.cn', 'mscs.svaeuzh.cn', 'cnzz.hhurm.com',
    'tp.vinuxhome.com', 'cnzz.mmstat.com', 'www.baihuillq.com', 's23.cnzz.com',
    'z3.cnzz.com', 'c.cnzz.com', 'stj.v1vo.top', 'z12.cnzz.com',
    'img.mosflower.cn', 'tips.gamevvip.com', 'ehwe.yhdtns.com', 'xdn.cqqc3.com',
    'www.jixunkyy.cn', 'sp.chemacid.cn', 'hm.baidu.com', 's9.cnzz.com',
    'z6.cnzz.com', 'um.cavuc.com', 'mav.mavuz.com', 'wofwk.aoidf3.com',
    'z5.cnzz.com', 'xc.hubeijieshikj.cn', 'tj.tianwenhu.com', 'xg.gars57.cn',
    'k.jinxiuzhilv.com', 'cdn.bootcss.com', 'ppl.xunzhuo123.com',
    'xomk.jiangjunmh.top', 'img.xunzhuo123.com', 'z1.cnzz.com', 's13.cnzz.com',
    'xg.huataisangao.cn', 'z7.cnzz.com', 'z2.cnzz.com', 's96.cnzz.com',
    'q11.cnzz.com', 'thy.dacedsfa.cn', 'xg.whsbpw.cn', 's19.cnzz.com',
    'z8.cnzz.com', 's4.cnzz.com', 'f5w.as12df.top', 'ae01.alicdn.com',
    'www.92424.cn', 'k.wudejia.com', 'vivovip.mmszxc.top', 'qiu.xixiqiu.com',
    'cdnjs.hnfenxun.com', 'cms.qdwght.com',
]

FEED_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET',
    'Access-Control-Allow-Headers': 'Content-Type',
    'Cache-Control': 'public, max-age=3600',
}


def site_type(api: str) -> int:
    # 0 = XML api, 1 = JSON api
    api_lower = api.lower()
    if 'at/xml' in api_lower or api_lower.endswith('.xml'):
        return 0
    return 1


def tvbox_site(source: Source) -> Dict[str, Any]:
    return {
        'key': source.key or source.name,
        'name': source.name,
        'type': site_type(source.api),
        'api': source.api,
        'searchable': 1,
        'quickSearch': 1,
        'filterable': 1,
        'ext': source.detail or '',
        'timeout': 30,
        'categories': list(CATEGORIES),
    }


def build_tvbox_config(sources: List[Source], base_url: str) -> Dict[str, Any]:
    base_url = base_url.rstrip('/')
    return {
        'spider': '',
        'wallpaper': f'{base_url}/screenshot1.png',
        'sites': [tvbox_site(s) for s in sources],
        'parses': [
            {'name': 'Json併發', 'type': 2, 'url': 'Parallel'},
            {'name': 'Json輪詢', 'type': 2, 'url': 'Sequence'},
            {
                'name': 'Reelhub內建解析',
                'type': 1,
                'url': f'{base_url}/api/parse?url=',
                'ext': {'flag': ['qiyi', 'qq', 'letv', 'sohu', 'youku', 'mgtv', 'bilibili', 'wasu', 'xigua', '1905']},
            },
        ],
        'flags': list(PLAY_FLAGS),
        'lives': [
            {'name': 'Reelhub直播', 'type': 0, 'url': f'{base_url}/api/live/channels', 'epg': '', 'logo': ''},
        ],
        'ads': list(AD_HOSTS),
    }


def encode_tvbox_txt(config: Dict[str, Any]) -> str:
    text = json.dumps(config, ensure_ascii=False, indent=2)
    return base64.b64encode(text.encode('utf-8')).decode('ascii')
