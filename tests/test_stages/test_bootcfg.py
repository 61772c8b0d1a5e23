"""Tests for boot menu patching."""

import pytest

from remaster.models.bootcfg import RemoveTokenPatch, ReplaceTokenPatch, SetFieldPatch
from remaster.stages.bootcfg import BootConfigPatcher, BootMenu


GRUB_CFG = """\
set timeout=30

loadfont unicode

menuentry "Try or Install Ubuntu" {
\tset gfxpayload=keep
\tlinux\t/casper/vmlinuz layerfs-path=minimal.standard.live.squashfs --- quiet splash
\tinitrd\t/casper/initrd
}
menuentry "Ubuntu (safe graphics)" {
\tlinux\t/casper/vmlinuz nomodeset layerfs-path=minimal.standard.live.squashfs --- quiet splash
\tinitrd\t/casper/initrd
}
"""


class TestBootMenu:
    """Test the line-oriented boot menu model."""

    def test_set_field(self):
        """Test numeric fields are set in place."""
        menu = BootMenu(GRUB_CFG)

        assert menu.apply([SetFieldPatch(op="set-field", name="timeout", value=5)])
        assert menu.render().startswith("set timeout=5\n")

    def test_remove_token_with_value(self):
        """Test a parameter is removed together with its value."""
        menu = BootMenu(GRUB_CFG)

        menu.apply([RemoveTokenPatch(op="remove-token", token="layerfs-path")])

        text = menu.render()
        assert "layerfs-path" not in text
        assert "\tlinux /casper/vmlinuz --- quiet splash" in text
        assert "\tlinux /casper/vmlinuz nomodeset --- quiet splash" in text

    def test_kernel_image_never_touched(self):
        """Test the kernel path is not treated as a parameter."""
        menu = BootMenu("linux /casper/vmlinuz quiet\n")

        menu.apply([RemoveTokenPatch(op="remove-token", token="/casper/vmlinuz")])

        assert menu.render() == "linux /casper/vmlinuz quiet\n"

    def test_replace_token(self):
        """Test token substitution keeps position."""
        menu = BootMenu(GRUB_CFG)

        menu.apply([ReplaceTokenPatch(op="replace-token", old="splash", new="nosplash")])

        assert "--- quiet nosplash" in menu.render()
        assert " splash" not in menu.render()

    def test_replace_with_existing(self):
        """Test replacing into a token already present drops the old one."""
        menu = BootMenu("linux /vmlinuz quiet splash\n")

        menu.apply([ReplaceTokenPatch(op="replace-token", old="splash", new="quiet")])

        assert menu.render() == "linux /vmlinuz quiet\n"

    def test_idempotent(self):
        """Test a second application of the same patches changes nothing."""
        patches = [
            SetFieldPatch(op="set-field", name="timeout", value=5),
            RemoveTokenPatch(op="remove-token", token="layerfs-path"),
            ReplaceTokenPatch(op="replace-token", old="splash", new="nosplash"),
        ]
        menu = BootMenu(GRUB_CFG)
        assert menu.apply(patches)
        once = menu.render()

        assert not menu.apply(patches)
        assert menu.render() == once

    def test_untouched_lines_preserved(self):
        """Test lines without matches keep their exact formatting."""
        menu = BootMenu(GRUB_CFG)

        menu.apply([SetFieldPatch(op="set-field", name="timeout", value=5)])

        assert menu.render().split("\n")[1:] == GRUB_CFG.split("\n")[1:]


@pytest.mark.asyncio
class TestBootConfigPatcher:
    """Test the boot configuration stage."""

    async def test_collapse_drops_layer_path(self, ctx):
        """Test menus stop naming per-layer containers after a collapse."""
        ctx.iso_tree.path("boot/grub/grub.cfg").write_text(GRUB_CFG)
        ctx.retired_layer_names = ["minimal.squashfs", "minimal.standard.live.squashfs"]

        await BootConfigPatcher().run(ctx)

        text = ctx.iso_tree.path("boot/grub/grub.cfg").read_text()
        assert "layerfs-path" not in text
        assert "minimal.standard.live.squashfs" not in text

    async def test_configured_patches(self, ctx, config_factory):
        """Test configured patches apply to every menu file present."""
        ctx.config = config_factory(boot={
            "config_files": ["boot/grub/grub.cfg", "boot/grub/loopback.cfg", "isolinux/txt.cfg"],
            "patches": [{"op": "set-field", "name": "timeout", "value": 1}],
        })
        ctx.iso_tree.path("boot/grub/loopback.cfg").write_text("set timeout=10\n")

        await BootConfigPatcher().run(ctx)

        assert ctx.iso_tree.path("boot/grub/grub.cfg").read_text() == "set timeout=1\n"
        assert ctx.iso_tree.path("boot/grub/loopback.cfg").read_text() == "set timeout=1\n"
        assert not ctx.iso_tree.exists("isolinux/txt.cfg")
        assert ctx.warnings == []

    async def test_no_patches(self, ctx):
        """Test nothing is written without patches or a collapse."""
        before = ctx.iso_tree.path("boot/grub/grub.cfg").stat().st_mtime_ns

        await BootConfigPatcher().run(ctx)

        assert ctx.iso_tree.path("boot/grub/grub.cfg").stat().st_mtime_ns == before

    async def test_no_menu_files(self, ctx, config_factory):
        """Test a missing menu is a warning, not a failure."""
        ctx.config = config_factory(boot={
            "config_files": ["isolinux/txt.cfg"],
            "patches": [{"op": "remove-token", "token": "splash"}],
        })

        await BootConfigPatcher().run(ctx)

        assert len(ctx.warnings) == 1
        assert ctx.warnings[0].stage == "bootcfg"
