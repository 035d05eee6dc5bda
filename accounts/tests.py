from datetime import timedelta

from django.contrib.auth.models import User
from django.test import TestCase
from django.utils import timezone

from .models import UserProfile


class UserProfileTests(TestCase):
    def test_profile_created_on_signup(self):
        user = User.objects.create_user("judy")
        profile = UserProfile.objects.get(user=user)
        self.assertEqual((profile.role, profile.subscription_type), ("free", "free"))
        self.assertIsNone(profile.subscription_end_date)
        self.assertEqual(user.profile, profile)

    def test_expired_pro_reads_as_free(self):
        user = User.objects.create_user("mallory")
        UserProfile.objects.filter(user=user).update(
            role="pro", subscription_type="pro_monthly",
            subscription_end_date=timezone.now() - timedelta(minutes=1),
        )
        profile = UserProfile.objects.get(user=user)
        self.assertEqual(profile.role, "pro")
        self.assertEqual(profile.effective_role, "free")
        self.assertFalse(profile.is_active_subscription())

    def test_active_pro_and_lifetime_max(self):
        user = User.objects.create_user("niaj")
        profile = user.profile
        profile.role = "pro"
        profile.subscription_end_date = timezone.now() + timedelta(days=3)
        self.assertEqual(profile.effective_role, "pro")
        self.assertFalse(profile.is_active_subscription(now=timezone.now() + timedelta(days=4)))

        profile.role = "max"
        profile.subscription_end_date = None
        self.assertEqual(profile.effective_role, "max")
