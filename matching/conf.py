"""
Settings for the matching core are all namespaced in the LIFELINK_MATCHING
setting. For example your project's `settings.py` file might look like this:

LIFELINK_MATCHING = {
    'SCORE_WEIGHTS': {'distance': 0.35, 'availability': 0.25, 'history': 0.20,
                      'compatibility': 0.15, 'urgency': 0.05},
    'URGENCY_POLICIES': {'critical': {'response_deadline': 45}},
}

Access through `matching_settings`, e.g. `matching_settings.DONATION_COOLDOWN_DAYS`.
"""
from django.conf import settings
from django.core.signals import setting_changed

DEFAULTS = {
    'SCORE_WEIGHTS': {
        'distance': 0.35,
        'availability': 0.25,
        'history': 0.20,
        'compatibility': 0.15,
        'urgency': 0.05,
    },
    'URGENCY_POLICIES': {},
    'DONATION_COOLDOWN_DAYS': 90,
    'LOCATION_STALENESS_SECONDS': 6 * 60 * 60,
    'GRID_CELL_DEGREES': 0.1,
    'AVAILABILITY_FRESHNESS_HOURS': 72,
    'RESPONSE_SPEED_REFERENCE_SECONDS': 1800,
    'SCHEDULER_POLL_SECONDS': 1.0,
    'FINISHED_REQUEST_RETENTION': 1000,
    'NOTIFICATION_CHANNEL': 'matching.notifications.LoggingChannel',
    # Used when NOTIFICATION_CHANNEL is the ChannelRouter
    'NOTIFICATION_ROUTES': {},
    'NOTIFICATION_FALLBACK_CHANNEL': 'matching.notifications.LoggingChannel',
    'ALERT_FROM_EMAIL': None,
    'SITE_URL': '',
}


class MatchingSettings:
    """
    Lazy settings object: values are read from Django settings on first
    access and fall back to DEFAULTS.
    """

    def __init__(self, defaults=None):
        self.defaults = defaults or DEFAULTS
        self._cached_attrs = set()
        self._user_settings = None

    @property
    def user_settings(self):
        if self._user_settings is None:
            self._user_settings = getattr(settings, 'LIFELINK_MATCHING', {})
        return self._user_settings

    def __getattr__(self, attr):
        if attr not in self.defaults:
            raise AttributeError(f"Invalid matching setting: '{attr}'")

        try:
            val = self.user_settings[attr]
        except KeyError:
            val = self.defaults[attr]

        self._cached_attrs.add(attr)
        setattr(self, attr, val)
        return val

    def reload(self):
        for attr in self._cached_attrs:
            delattr(self, attr)
        self._cached_attrs.clear()
        self._user_settings = None


matching_settings = MatchingSettings(DEFAULTS)


def reload_matching_settings(*args, **kwargs):
    if kwargs['setting'] == 'LIFELINK_MATCHING':
        matching_settings.reload()


setting_changed.connect(reload_matching_settings)
