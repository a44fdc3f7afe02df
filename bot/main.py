"""
M+ Tournament Bot
Polls Warcraft Logs for team runs, scores them and posts results to Discord.
Only handles /forcecheck; everything else runs on the poll timer.
"""

import asyncio
from typing import List, Optional

import discord
from discord import app_commands

from collector import Collector
from config import load_settings
from gateway import AdminGateway, BroadcastHub
from log_utils import setup_logging
from poller import AdaptivePoller
from state_manager import StateManager
from storage import TournamentStore
from wcl_api import WclClient

logger = setup_logging("tournament")

# Discord rejects messages over 2000 characters
MAX_MESSAGE_LENGTH = 1900


def chunk_lines(lines: List[str], limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """Pack lines into as few messages as fit under the limit"""
    chunks, current = [], ""
    for line in lines:
        line = line[:limit]
        if current and len(current) + len(line) + 1 > limit:
            chunks.append(current)
            current = ""
        current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks


settings = load_settings()
if not settings.discord_token:
    raise RuntimeError("❌ DISCORD_TOKEN required in .env file")

store = TournamentStore(settings.data_dir)
state = StateManager(store)
hub = BroadcastHub(state, settings.recap_duration_ms)

intents = discord.Intents.default()
client = discord.Client(intents=intents)
tree = app_commands.CommandTree(client)

wcl: Optional[WclClient] = None
poller: Optional[AdaptivePoller] = None
gateway: Optional[AdminGateway] = None
poll_task: Optional[asyncio.Task] = None


async def send_to_channel(channel_id: Optional[int], lines: List[str]) -> None:
    if not channel_id or not lines:
        return
    channel = client.get_channel(channel_id)
    if channel is None:
        channel = await client.fetch_channel(channel_id)
    for chunk in chunk_lines(lines):
        await channel.send(chunk)


async def publish(notices: List[str], announcements: List[str]) -> None:
    """Operator notices to the commands channel, public results to the announce channel"""
    await send_to_channel(settings.commands_channel_id, notices)
    await send_to_channel(settings.announce_channel_id, announcements)


@tree.command(name="forcecheck", description="Check Warcraft Logs for new runs now")
@app_commands.describe(team="Limit the check to one team (optional)")
async def forcecheck(interaction: discord.Interaction, team: Optional[str] = None):
    """Handle /forcecheck command"""
    await interaction.response.defer(ephemeral=True)
    if gateway is None:
        return await interaction.followup.send("❌ Bot is still starting up", ephemeral=True)
    payload = {"team": team} if team else {}
    response = await gateway.handle("force_refresh", payload, settings.admin_secret)
    icon = "✅" if response.success else "❌"
    await interaction.followup.send(f"{icon} {response.message}", ephemeral=True)


@client.event
async def on_ready():
    """Bot startup - sync commands and start polling"""
    global wcl, poller, gateway, poll_task
    print(f"🤖 {client.user} connected to Discord")
    print(f"📊 Serving {len(client.guilds)} servers")

    if poll_task is None:
        wcl = WclClient(
            settings.wcl_client_id,
            settings.wcl_client_secret,
            timeout_seconds=settings.api_timeout_seconds,
            on_request=state.record_api_request,
        )
        collector = Collector(store, wcl, settings)
        poller = AdaptivePoller(
            collector,
            state,
            settings.poll_interval_active_ms,
            settings.poll_interval_idle_ms,
            notify=publish,
        )
        gateway = AdminGateway(store, state, poller, settings.admin_secret, settings.recap_duration_ms)
        state.initialize()
        poll_task = asyncio.create_task(poller.run_forever())
        print(f"⏱️ Polling every {settings.poll_interval_active_ms // 1000}s (active) / "
              f"{settings.poll_interval_idle_ms // 1000}s (idle)")

    try:
        synced = await tree.sync()
        print(f"✅ Synced {len(synced)} command(s)")
        print("📋 Active command: /forcecheck")
    except discord.DiscordException as e:
        print(f"❌ Failed to sync: {e}")


@tree.error
async def on_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
    """Handle command errors"""
    logger.error(f"Error in /{interaction.command.name if interaction.command else '?'}: {error}")
    if not interaction.response.is_done():
        await interaction.response.send_message(f"❌ Error: {error}", ephemeral=True)


def main():
    """Start the bot"""
    print("🚀 Starting M+ Tournament Bot")
    if not settings.has_wcl_credentials:
        print("⚠️ WCL_CLIENT_ID / WCL_CLIENT_SECRET missing - polling will report auth failures")
    store.ensure_files()
    client.run(settings.discord_token)


if __name__ == "__main__":
    main()
