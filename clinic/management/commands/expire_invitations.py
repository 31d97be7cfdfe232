from django.core.management.base import BaseCommand

from clinic.services.invitations import expire_overdue


class Command(BaseCommand):
    help = "Mark overdue pending invitations as expired."

    def handle(self, *args, **opts):
        count = expire_overdue()
        self.stdout.write(self.style.SUCCESS(f"expired {count} invitation(s)"))
