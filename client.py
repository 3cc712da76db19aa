"""
FLUENT COACH TERMINAL CLIENT
============================

PURPOSE:
This is a command-line interface for practising with the coach. It talks to
the running backend over HTTP and prints replies as they stream in.

USAGE:
    python client.py

    Make sure the server is running first: python run.py

COMMANDS:
    1 / 2 / 3  - Switch coach role (Daily Coach, TOEFL Examiner, Campus Buddy).
                 Switching role starts a new conversation.
    /history   - View the conversation so far
    /clear     - Clear the conversation (keeps the role)
    /scenarios - List practice scenarios
    /use N     - Send the opening line of scenario N
    /quit or /exit - Exit

    Ctrl+C while the coach is replying stops the reply.
"""

import requests
from uuid import uuid4

from app.services.stream_decoder import decode_stream


# -----------------------------------------------------------------------------
# CONFIGURATION
# -----------------------------------------------------------------------------
# API base URL; change if your server runs on a different host or port.
BASE_URL = "http://localhost:8000"
SESSION_ID = str(uuid4())
ROLE_KEYS = {"1": "daily_coach", "2": "toefl_examiner", "3": "campus_buddy"}
CURRENT_ROLE = "daily_coach"


# -----------------------------------------------------------------------------
# UI HELPERS
# -----------------------------------------------------------------------------

def print_header():
    print("\n" + "="*60)
    print("🎙️  Fluent Coach - English speaking practice")
    print("="*60)
    print("\nRoles:")
    print("  1 = Daily Coach")
    print("  2 = TOEFL Examiner")
    print("  3 = Campus Buddy")
    print("\nCommands:")
    print("  /history - See chat history")
    print("  /clear - Clear the conversation")
    print("  /scenarios - List scenarios, /use N to start one")
    print("  /quit - Exit")
    print("="*60 + "\n")


def get_user_input():
    """Get user's input - either a command or a message."""
    try:
        return input("\nYou: ").strip()
    except (KeyboardInterrupt, EOFError):
        return None


# -----------------------------------------------------------------------------
# API CALLS
# -----------------------------------------------------------------------------

def stream_message(message):
    """
    Send a message to /chat/stream and print the reply piece by piece.

    The response is an OpenAI-style SSE stream, so it is decoded with the same
    decoder the backend uses for the provider. Ctrl+C asks the server to cancel.
    """
    try:
        with requests.post(
            f"{BASE_URL}/chat/stream",
            json={"message": message, "session_id": SESSION_ID},
            stream=True,
            timeout=60,
        ) as response:
            if response.status_code != 200:
                try:
                    print(f"❌ {response.json().get('detail')}")
                except ValueError:
                    print(f"❌ Error: {response.status_code} - {response.text}")
                return
            try:
                for fragment in decode_stream(response.iter_content(chunk_size=None)):
                    print(fragment, end="", flush=True)
            except KeyboardInterrupt:
                cancel_reply()
                print(" ⏹️")
                return
            print()

    except requests.exceptions.ConnectionError:
        print("❌ Cannot connect to backend. Start it with: python run.py")
    except requests.exceptions.Timeout:
        print("❌ Request timed out.")


def cancel_reply():
    try:
        requests.post(f"{BASE_URL}/chat/{SESSION_ID}/cancel", timeout=10)
    except requests.exceptions.RequestException as e:
        print(f"\n❌ Could not cancel: {e}")


def change_role(role):
    response = requests.post(f"{BASE_URL}/chat/{SESSION_ID}/role", json={"role": role}, timeout=10)
    return response.status_code == 200


def clear_history():
    # 404 just means nothing was said yet.
    requests.delete(f"{BASE_URL}/chat/history/{SESSION_ID}", timeout=10)


def get_chat_history():
    """Fetch the conversation and format it for display."""
    try:
        response = requests.get(f"{BASE_URL}/chat/history/{SESSION_ID}", timeout=10)
        if response.status_code != 200:
            return "Could not retrieve history"
        messages = response.json().get("messages", [])
        if not messages:
            return "No messages in this session"

        output = f"\n📜 Chat History ({len(messages)} messages):\n"
        output += "-" * 60 + "\n"
        for i, msg in enumerate(messages, 1):
            who = "You" if msg.get("role") == "user" else "Coach"
            output += f"{i}. {who}: {msg.get('content', '')}\n"
        output += "-" * 60 + "\n"
        return output
    except requests.exceptions.RequestException as e:
        return f"Error retrieving history: {str(e)}"


def get_scenarios():
    response = requests.get(f"{BASE_URL}/scenarios", timeout=10)
    response.raise_for_status()
    return response.json().get("scenarios", [])


def scenario_prompt(scenarios, number):
    """Opening line of scenario `number` (1-based, as shown by /scenarios). Raises ValueError if out of range."""
    index = int(number)
    if index < 1 or index > len(scenarios):
        raise ValueError(f"No scenario {index}")
    return scenarios[index - 1]["prompt"]


# -----------------------------------------------------------------------------
# MAIN LOOP
# -----------------------------------------------------------------------------

def main():
    """Read commands and messages until /quit or /exit."""
    global CURRENT_ROLE

    print_header()
    print(f"💡 Current role: {CURRENT_ROLE}. Type a message to start.\n")

    while True:
        try:
            user_input = get_user_input()
            if user_input is None or user_input in ["/quit", "/exit"]:
                print("\n👋 Goodbye!")
                break

            if user_input in ROLE_KEYS:
                if change_role(ROLE_KEYS[user_input]):
                    CURRENT_ROLE = ROLE_KEYS[user_input]
                    print(f"✅ Switched to {CURRENT_ROLE} (new conversation)\n")
                else:
                    print("❌ Could not switch role")
                continue

            elif user_input == "/history":
                print(get_chat_history())
                continue

            elif user_input == "/clear":
                clear_history()
                print("\n🔄 Conversation cleared.")
                continue

            elif user_input == "/scenarios":
                for i, scenario in enumerate(get_scenarios(), 1):
                    print(f"  {i}. {scenario['icon']} {scenario['title']}: {scenario['prompt']}")
                continue

            elif user_input.startswith("/use "):
                scenarios = get_scenarios()
                try:
                    user_input = scenario_prompt(scenarios, user_input.split()[1])
                except (ValueError, IndexError):
                    print("❌ Usage: /use N (see /scenarios)")
                    continue
                print(f"You: {user_input}")

            elif user_input.startswith("/"):
                print(f"❌ Unknown command: {user_input}")
                continue

            if not user_input:
                continue

            print("🤖 Coach: ", end="", flush=True)
            stream_message(user_input)

        except KeyboardInterrupt:
            print("\n\n👋 Goodbye!")
            break
        except requests.exceptions.RequestException as e:
            print(f"❌ Error: {str(e)}")


# Run the interactive loop when this file is executed (python client.py).
if __name__ == "__main__":
    main()
