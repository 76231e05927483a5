from django.apps import AppConfig


class MatchingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'matching'
    verbose_name = 'Donor Matching'

    def ready(self):
        # Weights are validated once here, never at request time
        from algorithms.scoring import ScoreWeights
        from algorithms.urgency import build_policies
        from matching.conf import matching_settings

        ScoreWeights.from_setting(matching_settings.SCORE_WEIGHTS).validate()
        build_policies(matching_settings.URGENCY_POLICIES)
