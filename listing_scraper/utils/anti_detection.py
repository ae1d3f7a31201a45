"""
Anti-Detection Module
Fingerprint generation and stealth script injection for listing crawls.

One ``Fingerprint`` is generated per run and applied to every browser the run
launches, so all sessions present the same identity.
"""

from __future__ import annotations

import json
import random
from typing import Any, Dict, Optional

from loguru import logger

from listing_scraper.data_models.models import Fingerprint


STEALTH_BROWSER_ARGS = [
    '--no-sandbox',
    '--disable-blink-features=AutomationControlled',
    '--disable-dev-shm-usage',
    '--disable-features=VizDisplayCompositor',
    '--disable-background-timer-throttling',
    '--disable-backgrounding-occluded-windows',
    '--disable-renderer-backgrounding',
    '--disable-ipc-flooding-protection',
    '--no-first-run',
    '--no-default-browser-check',
    '--disable-default-apps',
    '--disable-sync',
    '--disable-translate',
    '--hide-scrollbars',
    '--mute-audio',
    '--disable-client-side-phishing-detection',
    '--disable-component-extensions-with-background-pages',
    '--disable-domain-reliability',
    '--disable-features=TranslateUI',
]


FINGERPRINT_POOLS: Dict[str, Any] = {
    'viewports': [
        (1920, 1080), (1366, 768), (1440, 900), (1536, 864), (1280, 720), (1600, 900),
    ],
    # (hardwareConcurrency, deviceMemory) pairs seen together on real machines
    'hardware': [
        (4, 4), (4, 8), (8, 8), (8, 16), (12, 16), (16, 32),
    ],
    # (UNMASKED_VENDOR_WEBGL, UNMASKED_RENDERER_WEBGL)
    'webgl': [
        ('Intel Inc.', 'Intel(R) HD Graphics 620'),
        ('NVIDIA Corporation', 'NVIDIA GeForce GTX 1060/PCIe/SSE2'),
        ('ATI Technologies Inc.', 'AMD Radeon RX 580'),
        ('Intel Inc.', 'Intel(R) UHD Graphics 630'),
    ],
    'timezones': [
        'Asia/Singapore', 'Asia/Kuala_Lumpur', 'Asia/Hong_Kong',
        'Australia/Sydney', 'Europe/London', 'America/New_York',
    ],
    'language_sets': [
        ['en-US', 'en'],
        ['en-GB', 'en'],
        ['en-SG', 'en', 'zh-SG'],
        ['en-US', 'en', 'zh-CN'],
    ],
    'pixel_ratios': [1, 1, 1.25, 1.5, 2],
    'color_depths': [24, 24, 30],
    # Chromium user agents only, the engine underneath is always Chromium
    'user_agents': {
        'Win32': [
            'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36',
            'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/129.0.0.0 Safari/537.36',
            'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36 Edg/130.0.0.0',
        ],
        'MacIntel': [
            'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36',
            'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/129.0.0.0 Safari/537.36',
        ],
        'Linux x86_64': [
            'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36',
        ],
    },
}


class FingerprintGenerator:
    """Draws a coherent browser fingerprint from curated pools"""

    def __init__(self, rng: Optional[random.Random] = None, pools: Optional[Dict[str, Any]] = None):
        self.rng = rng or random.Random()
        self.pools = pools or FINGERPRINT_POOLS

    def generate(self) -> Fingerprint:
        platform = self.rng.choice(list(self.pools['user_agents']))
        user_agent = self.rng.choice(self.pools['user_agents'][platform])
        width, height = self.rng.choice(self.pools['viewports'])
        cores, memory = self.rng.choice(self.pools['hardware'])
        vendor, renderer = self.rng.choice(self.pools['webgl'])
        languages = list(self.rng.choice(self.pools['language_sets']))

        # Browser chrome (tabs, address bar, taskbar) sits outside the viewport
        chrome_height = self.rng.randint(70, 140)

        fingerprint = Fingerprint(
            user_agent=user_agent,
            platform=platform,
            viewport_width=width,
            viewport_height=height,
            screen_width=width,
            screen_height=height + chrome_height,
            device_scale_factor=self.rng.choice(self.pools['pixel_ratios']),
            hardware_concurrency=cores,
            device_memory=memory,
            timezone_id=self.rng.choice(self.pools['timezones']),
            locale=languages[0],
            languages=languages,
            webgl_vendor=vendor,
            webgl_renderer=renderer,
            color_depth=self.rng.choice(self.pools['color_depths']),
            max_touch_points=0,
            do_not_track=self.rng.choice([None, '1']),
            battery_charging=self.rng.random() < 0.6,
            battery_level=round(self.rng.uniform(0.35, 1.0), 2),
            audio_noise=round(self.rng.uniform(0.00001, 0.0001), 6),
        )
        logger.debug(f"Generated fingerprint: {platform} {width}x{height} {renderer} {fingerprint.timezone_id}")
        return fingerprint


def _chrome_version(user_agent: str) -> Optional[str]:
    marker = 'Chrome/'
    if marker not in user_agent:
        return None
    return user_agent.split(marker, 1)[1].split('.', 1)[0]


def build_stealth_headers(fingerprint: Fingerprint) -> Dict[str, str]:
    """Request headers consistent with the fingerprint's user agent and languages."""
    languages = fingerprint.languages
    accept_language = ','.join(
        lang if i == 0 else f"{lang};q={max(0.1, 1 - i * 0.1):.1f}"
        for i, lang in enumerate(languages)
    )
    headers = {
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8',
        'Accept-Language': accept_language,
        'Upgrade-Insecure-Requests': '1',
    }
    if fingerprint.do_not_track:
        headers['DNT'] = fingerprint.do_not_track

    version = _chrome_version(fingerprint.user_agent)
    if version:
        brand = 'Microsoft Edge' if 'Edg/' in fingerprint.user_agent else 'Google Chrome'
        headers['Sec-Ch-Ua'] = f'"Chromium";v="{version}", "{brand}";v="{version}", "Not?A_Brand";v="99"'
        headers['Sec-Ch-Ua-Mobile'] = '?0'
        headers['Sec-Ch-Ua-Platform'] = {
            'Win32': '"Windows"',
            'MacIntel': '"macOS"',
        }.get(fingerprint.platform, '"Linux"')
    return headers


_STEALTH_TEMPLATE = r"""
(() => {
    const fp = __FINGERPRINT__;
    const define = (obj, prop, value) => {
        try {
            Object.defineProperty(obj, prop, { get: () => value, configurable: true });
        } catch (e) {}
    };

    // Automation flags
    define(Navigator.prototype, 'webdriver', undefined);

    // Identity
    define(navigator, 'languages', Object.freeze(fp.languages.slice()));
    define(navigator, 'language', fp.languages[0]);
    define(navigator, 'platform', fp.platform);
    define(navigator, 'hardwareConcurrency', fp.hardwareConcurrency);
    define(navigator, 'deviceMemory', fp.deviceMemory);
    define(navigator, 'maxTouchPoints', fp.maxTouchPoints);
    if (fp.doNotTrack !== null) {
        define(navigator, 'doNotTrack', fp.doNotTrack);
    }

    // Plugins
    const pluginData = [
        { name: 'PDF Viewer', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
        { name: 'Chrome PDF Viewer', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
        { name: 'Chromium PDF Viewer', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
        { name: 'Microsoft Edge PDF Viewer', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
        { name: 'WebKit built-in PDF', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
    ];
    const plugins = Object.assign(pluginData.slice(), {
        item: (i) => pluginData[i] || null,
        namedItem: (name) => pluginData.find((p) => p.name === name) || null,
        refresh: () => {},
    });
    define(navigator, 'plugins', plugins);

    // Permissions
    if (navigator.permissions && navigator.permissions.query) {
        const originalQuery = navigator.permissions.query.bind(navigator.permissions);
        navigator.permissions.query = (parameters) => (
            parameters && parameters.name === 'notifications'
                ? Promise.resolve({ state: Notification.permission })
                : originalQuery(parameters)
        );
    }

    // Battery
    navigator.getBattery = () => Promise.resolve({
        charging: fp.battery.charging,
        chargingTime: fp.battery.charging ? 0 : Infinity,
        dischargingTime: fp.battery.charging ? Infinity : 7200,
        level: fp.battery.level,
        addEventListener: () => {},
        removeEventListener: () => {},
    });

    // WebGL vendor / renderer
    const patchWebGL = (proto) => {
        if (!proto) return;
        const getParameter = proto.getParameter;
        proto.getParameter = function (parameter) {
            if (parameter === 37445) return fp.webglVendor;
            if (parameter === 37446) return fp.webglRenderer;
            return getParameter.call(this, parameter);
        };
    };
    patchWebGL(window.WebGLRenderingContext && WebGLRenderingContext.prototype);
    patchWebGL(window.WebGL2RenderingContext && WebGL2RenderingContext.prototype);

    // Canvas noise
    const toDataURL = HTMLCanvasElement.prototype.toDataURL;
    HTMLCanvasElement.prototype.toDataURL = function (...args) {
        try {
            const ctx = this.getContext('2d');
            if (ctx && this.width && this.height) {
                const image = ctx.getImageData(0, 0, this.width, this.height);
                for (let i = 0; i < image.data.length; i += 4) {
                    image.data[i] = Math.max(0, Math.min(255, image.data[i] + Math.floor(Math.random() * 3) - 1));
                }
                ctx.putImageData(image, 0, 0);
            }
        } catch (e) {}
        return toDataURL.apply(this, args);
    };

    // Audio noise
    if (window.AudioBuffer) {
        const getChannelData = AudioBuffer.prototype.getChannelData;
        AudioBuffer.prototype.getChannelData = function (...args) {
            const data = getChannelData.apply(this, args);
            for (let i = 0; i < data.length; i += 100) {
                data[i] += fp.audioNoise * (Math.random() - 0.5);
            }
            return data;
        };
    }

    // Screen
    define(screen, 'width', fp.screen.width);
    define(screen, 'height', fp.screen.height);
    define(screen, 'availWidth', fp.screen.width);
    define(screen, 'availHeight', fp.screen.height - 40);
    define(screen, 'colorDepth', fp.colorDepth);
    define(screen, 'pixelDepth', fp.colorDepth);

    // window.chrome
    window.chrome = window.chrome || {};
    window.chrome.runtime = window.chrome.runtime || {
        onConnect: undefined,
        onMessage: undefined,
        sendMessage: function () {},
        connect: function () { return { postMessage: function () {}, onMessage: { addListener: function () {} } }; },
    };
    window.chrome.loadTimes = window.chrome.loadTimes || function () { return { requestTime: Date.now() / 1000 }; };
    window.chrome.csi = window.chrome.csi || function () { return { onloadT: Date.now(), startE: Date.now(), tran: 15 }; };

    // ChromeDriver markers
    for (const key of Object.keys(window)) {
        if (/^\$?cdc_/.test(key)) {
            try { delete window[key]; } catch (e) {}
        }
    }
    for (const key of Object.keys(document)) {
        if (/^\$?cdc_/.test(key)) {
            try { delete document[key]; } catch (e) {}
        }
    }
})();
"""


def build_stealth_script(fingerprint: Fingerprint) -> str:
    """Single init script that makes the page agree with ``fingerprint``."""
    payload = {
        'languages': fingerprint.languages,
        'platform': fingerprint.platform,
        'hardwareConcurrency': fingerprint.hardware_concurrency,
        'deviceMemory': fingerprint.device_memory,
        'maxTouchPoints': fingerprint.max_touch_points,
        'doNotTrack': fingerprint.do_not_track,
        'battery': {'charging': fingerprint.battery_charging, 'level': fingerprint.battery_level},
        'webglVendor': fingerprint.webgl_vendor,
        'webglRenderer': fingerprint.webgl_renderer,
        'audioNoise': fingerprint.audio_noise,
        'screen': {'width': fingerprint.screen_width, 'height': fingerprint.screen_height},
        'colorDepth': fingerprint.color_depth,
    }
    return _STEALTH_TEMPLATE.replace('__FINGERPRINT__', json.dumps(payload))


class StealthInjector:
    """Installs the stealth init script on a context or page before navigation"""

    def __init__(self, fingerprint: Fingerprint):
        self.fingerprint = fingerprint
        self._script: Optional[str] = None

    @property
    def script(self) -> str:
        if self._script is None:
            self._script = build_stealth_script(self.fingerprint)
        return self._script

    async def apply(self, target) -> None:
        # Works for both BrowserContext and Page, they share add_init_script
        await target.add_init_script(self.script)

    def report(self) -> Dict[str, Any]:
        fp = self.fingerprint
        return {
            'user_agent': fp.user_agent,
            'platform': fp.platform,
            'viewport': f"{fp.viewport_width}x{fp.viewport_height}",
            'screen': f"{fp.screen_width}x{fp.screen_height}",
            'hardware_concurrency': fp.hardware_concurrency,
            'device_memory': fp.device_memory,
            'webgl': f"{fp.webgl_vendor} / {fp.webgl_renderer}",
            'timezone': fp.timezone_id,
            'languages': fp.languages,
        }
