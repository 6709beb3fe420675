from pytest_bdd import scenarios, given, when, then, parsers
from smsnudge.cli.main import cli

scenarios("features/credits.feature")


@given(parsers.parse("an account with {count:d} available credits"))
def account_with_credits(ledger, count):
    ledger.exists = True
    ledger.available = count


@given("the account has no credits yet")
def no_account(ledger):
    ledger.exists = False


@when(parsers.parse("the barber reserves {count:d} credits"))
def reserve(runner, context, ledger, count):
    context["result"] = runner.invoke(cli, ["credits", "reserve", "acct-1", str(count)])


@when("one message is delivered")
def delivered(runner, context, ledger):
    context["result"] = runner.invoke(cli, ["credits", "settle", "acct-1", "delivered"])


@when("one message fails")
def failed(runner, context, ledger):
    context["result"] = runner.invoke(cli, ["credits", "settle", "acct-1", "failed"])


@when(parsers.parse("the barber buys a pack of {amount:d} credits"))
def buy_pack(runner, context, ledger, amount):
    context["result"] = runner.invoke(cli, ["credits", "grant", "acct-1", str(amount)])


@then(parsers.parse("the balance is {available:d} available and {reserved:d} reserved"))
def balance_is(ledger, available, reserved):
    assert (ledger.available, ledger.reserved) == (available, reserved)
    assert ledger.available >= 0 and ledger.reserved >= 0
