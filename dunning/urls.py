from django.urls import path

from dunning.views import account_access_state, account_dunning_history

urlpatterns = [
    path(
        "account/<int:account_id>/access-state/",
        account_access_state,
        name="dunning_account_access_state",
    ),
    path(
        "account/<int:account_id>/history/",
        account_dunning_history,
        name="dunning_account_history",
    ),
]
